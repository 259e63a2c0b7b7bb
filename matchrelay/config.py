# SPDX-License-Identifier: GPL-2.0-or-later

"""Configuration loading logic.

Profiles are YAML files merged over DEFAULTS, so a profile only needs to hold
the values that differ from them.
"""

import copy
import os
import os.path
import yaml

DEFAULT_CFG_DIR = '/etc/matchrelay'
LOADED_CONFIGS = {}

DEFAULTS = {
    'region': 'EU',
    'urls': {
        'account_api': 'http://localhost:3551/s/api/',
        'game_api': 'http://localhost:3551/',
        'backend': 'http://localhost:3551/',
    },
    'http': {
        'timeout_secs': 30,
        'verify_ssl': True,
    },
    'auth': {
        'bearer_token': None,
        'token_file': None,
        'client_basic': '',
        'device_id': '',
    },
    'headers': {
        'issuer': 'MatchRelay / 1.0',
        'launcher_user_agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64)',
        'game_user_agent': ('Fortnite/++Fortnite+Release-9.10-CL-6639283 '
                            'Windows/10.0.26100.1.256.64bit'),
        'origin': 'http://tauri.localhost',
    },
    'game': {
        'folder': None,
        'executable': 'FortniteClient-Win64-Shipping.exe',
        'version': '++Fortnite+Release-9.10-CL-6639283-Windows',
        'arguments': [],
        'patch': {
            'url': None,
            'path': None,
        },
    },
    'poll': {
        'interval_secs': 2,
        'log_throttle_secs': 5,
        'clear_processed_secs': 30 * 60,
    },
    'supervisor': {
        'helper_path': None,
        'options_path': None,
        'launch_timeout_secs': 40,
        'settle_secs': 5,
        'probe_interval_secs': 1,
        'watchdog_grace_secs': 30,
        'watchdog_budget_secs': 60,
    },
    'matchmaking': {
        'playlist': 'playlist_showdownalt_solo',
        'bucket_id': '6245326:0:{region}:{playlist}',
        'ticket_options': {},
        'connect_attempts': 3,
        'connect_backoff_secs': 2,
        'connect_timeout_secs': 15,
        'attempt_timeout_secs': 120,
    },
    'orchestrator': {
        'settle_secs': 20,
        'cooldown_secs': 5,
        'success_delay_secs': 5,
    },
    'monitoring': {
        'port': None,
    },
    'log': {
        'directory': None,
    },
}


class ConfigReadError(Exception):
    pass


def merge(base, override):
    """Return a deep copy of `base` updated recursively with `override`."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = value
    return result


def load(profile):
    """Load (if needed) and return the configuration file for `profile`.

    Profile configurations are cached. Look for configuration profiles in the
    "CFG_DIR" environment variable if it is set, or in the DEFAULT_CFG_DIR
    otherwise. Raise a ConfigReadError if no such file exist.
    """

    try:
        return LOADED_CONFIGS[profile]
    except KeyError:
        pass

    cfg_filename = '{}.yml'.format(profile)
    cfg_directory = os.environ.get('CFG_DIR', DEFAULT_CFG_DIR)
    cfg_path = os.path.join(cfg_directory, cfg_filename)

    try:
        with open(cfg_path, 'r') as cfg_fp:
            cfg = yaml.safe_load(cfg_fp)
    except IOError:
        raise ConfigReadError("%s does not exist (specify CFG_DIR?)"
                              % cfg_path)

    if cfg is not None and not isinstance(cfg, dict):
        raise ConfigReadError("%s is not a mapping" % cfg_path)

    cfg = merge(DEFAULTS, cfg)
    LOADED_CONFIGS[profile] = cfg

    return cfg
