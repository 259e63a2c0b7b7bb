# SPDX-License-Identifier: GPL-2.0-or-later

import logging
import os
import os.path
import shutil

from matchrelay.errors import LaunchError


async def prepare_game_files(config, api):
    """Install the configured patch file in the game folder.

    The original file is backed up once to "<file>.backup"; later runs keep
    that first backup.
    """
    game = config['game']
    folder = game['folder']
    if not folder or not os.path.isdir(folder):
        raise LaunchError('game folder not found: {}'.format(folder))

    patch = game['patch']
    if not patch['url'] or not patch['path']:
        logging.debug('no patch file configured')
        return None

    logging.info('preparing game files')
    target = os.path.join(folder, patch['path'])
    os.makedirs(os.path.dirname(target), exist_ok=True)

    backup = target + '.backup'
    if os.path.isfile(target):
        if os.path.exists(backup):
            logging.info('backup already exists, skipping')
        else:
            shutil.copyfile(target, backup)
            logging.info('backed up original file to %s', backup)
    else:
        logging.warning('original file not found at %s, will create it',
                        target)

    content = await api.download(patch['url'])
    with open(target, 'wb') as f:
        f.write(content)
    logging.info('downloaded %s to %s', patch['url'], target)
    return target
