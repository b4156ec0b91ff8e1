import inspect
import logging


class BraceMessage(object):
    def __init__(self, fmt, args, kwargs):
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs

    def __str__(self):
        if not self.args and not self.kwargs:
            return str(self.fmt)
        return str(self.fmt).format(*self.args, **self.kwargs)


class BraceAdapter(logging.LoggerAdapter):
    """Logger adapter that formats with str.format braces, only if the record is going to be emitted."""

    # Keyword arguments meant for Logger._log, everything else goes to the format call
    _LOG_KWARGS = frozenset(inspect.getfullargspec(logging.Logger._log).args[1:])

    def __init__(self, logger):
        super().__init__(logger, None)

    def log(self, level, msg, *args, **kwargs):
        if self.isEnabledFor(level):
            msg, log_kwargs = self.process(msg, kwargs)
            format_kwargs = {key: value for key, value in kwargs.items() if key not in self._LOG_KWARGS}
            self.logger._log(
                level,
                BraceMessage(msg, args, format_kwargs),
                (),
                **log_kwargs,
            )

    def process(self, msg, kwargs):
        return msg, {key: kwargs[key] for key in self._LOG_KWARGS if key in kwargs}


def configure_logging(log_level):
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    peewee_logger = logging.getLogger('peewee')
    peewee_logger.setLevel(max(logging.INFO, log_level))  # We don't want peewee queries

    # Discovery cache warnings are noise with google-api-python-client and no cache backend
    logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)
