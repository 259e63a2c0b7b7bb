# SPDX-License-Identifier: GPL-2.0-or-later


class MatchRelayError(Exception):
    """Base class for all exceptions here."""

    pass


class HttpError(MatchRelayError):
    """Raised when a remote API answers with an unexpected status."""

    def __init__(self, status, url, body=''):
        self.status = status
        self.url = url
        self.body = body
        super().__init__(status, url, body)

    @property
    def unauthorized(self):
        return self.status == 401

    def __str__(self):
        return 'HTTP {} on {}: {}'.format(self.status, self.url,
                                          self.body[:200])


class CredentialError(MatchRelayError):
    """Raised when a credential is missing, rejected or already used."""

    pass


class LaunchError(MatchRelayError):
    """Raised when the game client could not be started or tracked."""

    pass


class MatchmakingError(MatchRelayError):
    pass


class MatchmakingConnectError(MatchmakingError):
    """Raised when the matchmaking socket cannot be opened."""

    pass


class MatchmakingResolutionError(MatchmakingError):
    """Raised when the assigned session cannot be looked up or handed off."""

    pass


class MatchmakingClosedError(MatchmakingError):
    """Raised when the socket closes before a session was resolved."""

    pass


class FatalStartupError(MatchRelayError):
    """Raised when an external prerequisite of the whole run is missing."""

    pass
