# SPDX-License-Identifier: GPL-2.0-or-later

"""Splits matchmaking frames into JSON messages.

The matchmaking service sometimes sends several JSON objects in one frame, or
frames that are not valid JSON as a whole. Frames are first parsed as a single
document; on failure every top-level brace-delimited object is extracted with
a bracket scan (which ignores braces inside string literals) and parsed on its
own.
"""

import json


def scan_objects(text):
    """Yield (fragment, complete) for each top-level object of `text`.

    Text outside of objects is skipped. An object still open at the end of
    `text`, or when a new object starts right after a closing bracket (which
    cannot happen inside a JSON object), is yielded with complete=False.
    """
    depth = 0
    start = None
    in_string = False
    escaped = False
    last = None
    for i, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
                last = char
            continue
        if char == '"':
            in_string = depth > 0
        elif char == '{':
            if depth > 0 and last in ('}', ']'):
                yield text[start:i], False
                depth = 0
            if depth == 0:
                start = i
            depth += 1
        elif char == '}' and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:i + 1], True
                start = None
        if not char.isspace():
            last = char
    if depth > 0:
        yield text[start:], False


def split_frame(raw):
    """Return (messages, anomalies) for the frame `raw`.

    `messages` are the decoded JSON objects, `anomalies` the fragments that
    could not be decoded.
    """
    try:
        data = json.loads(raw)
    except ValueError:
        pass
    else:
        if isinstance(data, dict):
            return [data], []
        if isinstance(data, list) and all(isinstance(d, dict) for d in data):
            return data, []
        return [], [raw]

    messages = []
    anomalies = []
    for fragment, complete in scan_objects(raw):
        if not complete:
            anomalies.append(fragment)
            continue
        try:
            messages.append(json.loads(fragment))
        except ValueError:
            anomalies.append(fragment)
    return messages, anomalies
