# SPDX-License-Identifier: GPL-2.0-or-later

import argparse
import asyncio
import logging
import os
import signal
import sys

import matchrelay.config
import matchrelay.log

from matchrelay import orchestrator
from matchrelay.errors import FatalStartupError
from matchrelay.monitoring import monitoring_start


async def serve(config):
    stop_event = asyncio.Event()
    loop = asyncio.get_event_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Not available on Windows, where Ctrl+C raises
            # KeyboardInterrupt instead.
            pass
    await orchestrator.run(config, stop_event)


def main():
    parser = argparse.ArgumentParser(
        description='Join matchmaking and relay game server addresses.')
    parser.add_argument('-c', '--config-dir',
                        help='Directory holding matchrelay.yml.')
    parser.add_argument('-l', '--local-logging', action='store_true',
                        default=False, help='Activate logging to stderr.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        default=False, help='Verbose mode.')
    args = parser.parse_args()

    if args.config_dir:
        os.environ['CFG_DIR'] = args.config_dir
    try:
        config = matchrelay.config.load('matchrelay')
    except matchrelay.config.ConfigReadError as e:
        print('matchrelay: {}'.format(e), file=sys.stderr)
        sys.exit(1)

    matchrelay.log.setup_logging('matchrelay', verbose=args.verbose,
                                 local=args.local_logging,
                                 directory=config['log']['directory'])
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.client').setLevel(logging.WARNING)

    if config['monitoring']['port']:
        monitoring_start(config['monitoring']['port'])

    try:
        asyncio.run(serve(config))
    except FatalStartupError as e:
        logging.error('startup failed: %s', e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    logging.info('stopped')


if __name__ == '__main__':
    main()
