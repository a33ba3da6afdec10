import argparse
import logging
import atexit
import sys


# Parse CLI args and apply boot-time side effects to 'constants'
def parse_boot_args(argv: list = None):
    from mcmanager.core import constants

    parser = argparse.ArgumentParser(description=f'CLI options for {constants.app_title}')

    parser.add_argument(
        '-d', '--debug',
        help = 'execute with verbose console logging',
        action = 'store_true'
    )

    parser.add_argument(
        '--host',
        type = str,
        default = None,
        metavar = '127.0.0.1',
        help = 'address for the Web API to listen on (overrides "api.host")'
    )

    parser.add_argument(
        '-p', '--port',
        type = int,
        default = None,
        metavar = '7010',
        help = 'port for the Web API to listen on (overrides "api.port")'
    )

    parser.add_argument(
        '--reset',
        help = 'reset global configuration file before launch',
        action = 'store_true'
    )

    args = parser.parse_args(argv)
    constants.debug = constants.debug or args.debug

    if args.reset:
        constants.app_config.reset()
        constants.send_log('main', 'global configuration was reset', 'warning')

    return args


def main(argv: list = None):
    args = parse_boot_args(argv)

    import uvicorn
    from mcmanager.core import constants
    from mcmanager.api.main import create_app

    # Disable low importance uvicorn logging
    if not constants.debug:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "uvicorn.asgi"):
            logging.getLogger(name).setLevel(logging.WARNING)

    host = args.host or constants.app_config.api.host
    port = args.port or constants.app_config.api.port
    atexit.register(constants.log_manager.dump_to_disk)

    configured = len(constants.app_config.servers or {})
    constants.send_log('main', f"serving {configured} configured server(s) on 'http://{host}:{port}'", 'info')
    if not configured:
        constants.send_log('main', f"no servers are configured in '{constants.app_config._path}'", 'warning')

    try:
        uvicorn.run(create_app(), host=host, port=port, log_level='debug' if constants.debug else 'warning')
    except KeyboardInterrupt:
        pass

    constants.send_log('main', 'shutting down', 'info')
    return 0


if __name__ == '__main__':
    sys.exit(main())
