# SPDX-License-Identifier: GPL-2.0-or-later

import datetime
import os
import os.path

import logging
import logging.handlers


# Do not log to stderr if started by systemd
LOG_STDERR = os.getppid() != 1
SYSLOG_SOCKET = '/dev/log'


def log_file_path(directory, program, today=None):
    today = today or datetime.date.today()
    return os.path.join(directory,
                        '{}-{}.log'.format(program, today.isoformat()))


def setup_logging(program, verbose=False, local=LOG_STDERR, directory=None):
    """Sets up the default Python logger.

    Log to syslog when available, optionaly to stderr and to a dated file.

    Args:
      program: Name of the program logging informations.
      verbose: If true, log more messages (DEBUG instead of INFO).
      local: If true, log to stderr as well as syslog.
      directory: If set, also append to <directory>/<program>-<date>.log.
    """
    loggers = []
    if os.path.exists(SYSLOG_SOCKET):
        loggers.append(logging.handlers.SysLogHandler(SYSLOG_SOCKET))
    if local:
        loggers.append(logging.StreamHandler())
    if directory:
        directory = os.path.expanduser(directory)
        os.makedirs(directory, exist_ok=True)
        loggers.append(logging.FileHandler(log_file_path(directory, program),
                                           encoding='utf-8'))
    for logger in loggers:
        logger.setFormatter(logging.Formatter(
            program + ': [%(levelname)s] %(message)s'
        ))
        logging.getLogger('').addHandler(logger)
    logging.getLogger('').setLevel(logging.DEBUG if verbose else logging.INFO)
