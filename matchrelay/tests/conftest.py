import aiohttp
import aiohttp.web
import pytest

import matchrelay.config
from matchrelay.api import ApiClient
from matchrelay.tokens import TokenStore


@pytest.fixture
def relayconf(mocker):
    """Mocks :func:`matchrelay.config.load` for a given profile.

    Usage to override the "matchrelay" profile region::

        def test_something(relayconf):
            relayconf("matchrelay", region="NA")
            ...

    Values are merged over the defaults, like real profiles are.
    """
    config_registry = {}

    def mocked_loader(profile):
        try:
            return config_registry[profile]
        except KeyError:
            raise KeyError(
                f"Application loads config profile '{profile}', which is not "
                f"configured in relayconf fixture."
            ) from None

    def configure_func(profile, **kwargs):
        config_registry[profile] = matchrelay.config.merge(
            matchrelay.config.DEFAULTS, kwargs
        )
        return config_registry[profile]

    config_load = mocker.patch("matchrelay.config.load")
    config_load.side_effect = mocked_loader
    yield configure_func
    config_load.stop()


@pytest.fixture
def config(tmp_path):
    game_folder = tmp_path / "game"
    game_folder.mkdir()
    return matchrelay.config.merge(
        matchrelay.config.DEFAULTS,
        {
            "region": "EU",
            "urls": {"account_api": "/s/api/", "game_api": "/", "backend": "/"},
            "auth": {
                "bearer_token": "launcher-token",
                "client_basic": "Y2xpZW50OnNlY3JldA==",
                "device_id": "device42",
            },
            "game": {"folder": str(game_folder), "arguments": ["-nosound"]},
            "poll": {"interval_secs": 0.01},
            "supervisor": {
                "helper_path": str(tmp_path / "helper"),
                "options_path": str(tmp_path / "launch_options.json"),
            },
            "matchmaking": {
                "connect_backoff_secs": 0.01,
                "connect_timeout_secs": 2,
                "attempt_timeout_secs": 5,
            },
            "orchestrator": {"settle_secs": 0},
        },
    )


class FakeServices:
    """Launcher, game API, matchmaking socket and backend in one app."""

    def __init__(self):
        self.sessions = []
        self.sessions_status = 200
        # Raw body served instead of the JSON session list.
        self.sessions_body = None
        self.account_status = 200
        # Authorization header values accepted by the session lookup.
        self.session_lookup_auth = {"Bearer launcher-token"}
        self.server = {
            "serverAddress": "10.0.0.7",
            "serverPort": 7777,
            "attributes": {"SESSIONKEY_s": "key", "PLAYLISTNAME_s": "solo"},
        }
        self.frames = []
        self.close_after_frames = False
        self.ws_reject = False
        self.backend_status = 200
        self.patch_content = b"patched"

        self.requests = []
        self.ws_requests = []
        self.posts = []

    @property
    def app(self):
        app = aiohttp.web.Application(middlewares=[self.record])
        app.add_routes(
            [
                aiohttp.web.get("/s/api/v2/launcher/servers", self.servers),
                aiohttp.web.get("/s/api/v2/launcher/account", self.account),
                aiohttp.web.get("/account/api/oauth/exchange", self.exchange),
                aiohttp.web.post("/account/api/oauth/token", self.token),
                aiohttp.web.get(
                    "/fortnite/api/v2/versioncheck/Windows", self.version
                ),
                aiohttp.web.get(
                    "/fortnite/api/game/v2/matchmakingservice/ticket/"
                    "player/{account}",
                    self.ticket,
                ),
                aiohttp.web.get(
                    "/fortnite/api/matchmaking/session/{session}",
                    self.session_lookup,
                ),
                aiohttp.web.post("/api/v1/server-info", self.server_info),
                aiohttp.web.get("/matchmaking", self.matchmaking),
                aiohttp.web.get("/patch.dll", self.patch),
            ]
        )
        return app

    @aiohttp.web.middleware
    async def record(self, request, handler):
        self.requests.append(
            (request.method, request.path, dict(request.headers))
        )
        return await handler(request)

    def paths(self, path):
        return [r for r in self.requests if r[1] == path]

    async def servers(self, request):
        if self.sessions_status != 200:
            return aiohttp.web.Response(status=self.sessions_status)
        if self.sessions_body is not None:
            return aiohttp.web.Response(text=self.sessions_body,
                                        content_type="text/html")
        return aiohttp.web.json_response(self.sessions)

    async def account(self, request):
        return aiohttp.web.json_response({}, status=self.account_status)

    async def exchange(self, request):
        return aiohttp.web.json_response(
            {
                "code": "exchange-code-1234",
                "expiresInSeconds": 300,
                "creatingClientId": "client42",
            }
        )

    async def token(self, request):
        form = await request.post()
        if form["grant_type"] == "client_credentials":
            return aiohttp.web.json_response({"access_token": "client-token"})
        if form["exchange_code"] != "exchange-code-1234":
            return aiohttp.web.json_response({}, status=400)
        return aiohttp.web.json_response(
            {
                "access_token": "access-token",
                "account_id": "account42",
                "display_name": "Tester",
            }
        )

    async def version(self, request):
        return aiohttp.web.json_response({"type": "NO_UPDATE"})

    async def ticket(self, request):
        return aiohttp.web.json_response(
            {
                "ticketType": "mms-player",
                "payload": "payload-data",
                "signature": "signature-data",
                "serviceUrl": "/matchmaking",
            }
        )

    async def session_lookup(self, request):
        if request.headers.get("Authorization") not in self.session_lookup_auth:
            return aiohttp.web.json_response({}, status=401)
        return aiohttp.web.json_response(
            dict(self.server, id=request.match_info["session"])
        )

    async def server_info(self, request):
        self.posts.append(await request.json())
        return aiohttp.web.Response(status=self.backend_status)

    async def matchmaking(self, request):
        self.ws_requests.append(dict(request.headers))
        if self.ws_reject:
            return aiohttp.web.Response(status=403)
        ws = aiohttp.web.WebSocketResponse()
        await ws.prepare(request)
        for frame in self.frames:
            await ws.send_str(frame)
        if self.close_after_frames:
            await ws.close()
            return ws
        async for msg in ws:
            pass
        return ws

    async def patch(self, request):
        return aiohttp.web.Response(body=self.patch_content)


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
async def http_client(aiohttp_client, services):
    return await aiohttp_client(services.app)


@pytest.fixture
def tokens(config):
    token_store = TokenStore(config)
    token_store.set_token("launcher-token")
    return token_store


@pytest.fixture
def api(config, tokens, http_client):
    return ApiClient(config, tokens, http_client=http_client)
