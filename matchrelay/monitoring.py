# SPDX-License-Identifier: GPL-2.0-or-later

from prometheus_client import start_http_server, Summary, Gauge, Counter

matchrelay_sessions_detected = Counter(
    'matchrelay_sessions_detected',
    'Number of eligible sessions handed to the orchestrator')

matchrelay_processed_sessions = Gauge(
    'matchrelay_processed_sessions',
    'Number of session ids in the processed set')

matchrelay_poll_errors = Counter(
    'matchrelay_poll_errors',
    'Number of failed session list requests')

matchrelay_attempts = Counter(
    'matchrelay_attempts',
    'Number of match acquisition attempts')

matchrelay_attempt_failures = Counter(
    'matchrelay_attempt_failures',
    'Number of failed attempts, by pipeline stage',
    ['stage'])

matchrelay_attempt_summary = Summary(
    'matchrelay_attempt_summary',
    'Summary of match acquisition attempts')

matchrelay_backend_posts = Counter(
    'matchrelay_backend_posts',
    'Number of server infos posted to the backend')

matchrelay_watchdog_expired = Counter(
    'matchrelay_watchdog_expired',
    'Number of launches terminated by the watchdog')

matchrelay_protocol_anomalies = Counter(
    'matchrelay_protocol_anomalies',
    'Number of unparseable matchmaking frame fragments')


def monitoring_start(port):
    start_http_server(port)
