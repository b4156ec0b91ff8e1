#!/usr/bin/env python3
import argparse
import logging

from drive_logging import configure_logging
from host import DriveHost


def _optional_bool(value):
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def run_config(args):
    server = DriveHost(args.state)
    server.config(
        api_port=args.api_port,
        google_client_id=args.google_client_id,
        google_client_secret=args.google_client_secret,
        redirect_uri=args.redirect_uri,
        temp_root=args.temp_root,
        drive_root_folder=args.drive_root_folder,
        push_interval_seconds=args.push_interval,
        metadata_timeout_seconds=args.metadata_timeout,
        session_max_age_seconds=args.session_max_age,
        peer_port_pools_fmt=args.peer_port_pools,
        is_dht_enabled=args.enable_dht,
        force_https=args.force_https,
    )


def run_main(args):
    server = DriveHost(args.state)
    server.run()


def main():
    parser = argparse.ArgumentParser(description='Torrent downloader that syncs finished files to Google Drive.')
    parser.add_argument('--log-level', default='INFO', choices=[
        'CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'], help='Logging level.')
    parser.add_argument('--state', required=True, help='Path to config and state directory.')

    subparsers = parser.add_subparsers(help='sub-command help')

    parser_config = subparsers.add_parser('config')
    parser_config.set_defaults(func=run_config)
    parser_config.add_argument('--api-port', type=int, help='Port to listen on for the API.')
    parser_config.add_argument('--google-client-id', help='OAuth client id of the Google project.')
    parser_config.add_argument('--google-client-secret', help='OAuth client secret of the Google project.')
    parser_config.add_argument('--redirect-uri', help='Public URL of /login-callback.')
    parser_config.add_argument('--temp-root', help='Directory for in-progress downloads.')
    parser_config.add_argument('--drive-root-folder', help='Drive folder that receives all torrents.')
    parser_config.add_argument('--push-interval', type=float, help='Seconds between torrent list pushes.')
    parser_config.add_argument('--metadata-timeout', type=float,
                               help='Seconds add-torrent waits for metadata.')
    parser_config.add_argument('--session-max-age', type=int, help='Seconds of inactivity before logout.')
    parser_config.add_argument('--peer-port-pools', help='Peer port ranges, e.g. 21413-21613.')
    parser_config.add_argument('--enable-dht', type=_optional_bool, help='Enable DHT for new sessions.')
    parser_config.add_argument('--force-https', type=_optional_bool,
                               help='Redirect plain HTTP requests behind a proxy to HTTPS.')

    parser_run = subparsers.add_parser('run')
    parser_run.set_defaults(func=run_main)

    args = parser.parse_args()
    if not hasattr(args, 'func'):
        parser.print_help()
        exit(2)
    configure_logging(logging.getLevelName(args.log_level))  # getLevelName will return the code here
    args.func(args)


if __name__ == '__main__':
    main()
