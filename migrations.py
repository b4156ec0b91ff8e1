import logging

from playhouse import migrate

from drive_logging import BraceAdapter

logger = BraceAdapter(logging.getLogger(__name__))


def _record_migration(db, name):
    db.execute_sql('INSERT INTO migration (name) VALUES (?)', (name,))


def _get_applied_migrations(db):
    return {row[0] for row in db.execute_sql('SELECT name FROM migration').fetchall()}


def _handle_table_creation(db, migrations):
    with db.atomic():
        for migration_name, _ in migrations:
            _record_migration(db, migration_name)


def _handle_migrations(db, migrations, current_migrations):
    migrator = migrate.SqliteMigrator(db)
    for migration_name, migration_fn in migrations:
        if migration_name in current_migrations:
            continue
        logger.info('Running migration {}', migration_name)
        with db.atomic():
            migration_fn(migrator)
            _record_migration(db, migration_name)


def apply_migrations(db, models, migrations):
    """Create missing tables and bring an existing state DB up to date.

    A fresh DB gets its tables from the current models, so every migration is only recorded.
    """
    is_new = not db.table_exists('migration')
    db.create_tables(models)
    if is_new or not _get_applied_migrations(db):
        logger.info('Migrations table was just created, inserting all current migrations.')
        _handle_table_creation(db, migrations)
    else:
        logger.debug('Migrations detected, updating state.')
        _handle_migrations(db, migrations, _get_applied_migrations(db))
