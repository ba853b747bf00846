from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
from cryptography.fernet import Fernet

from src.config import DEFAULT_SCOPES, Platform, ProviderConfig, Settings

Responder = Union[Dict[str, Any], Callable[[httpx.Request], Any]]


class FakeProviderAPI:
    """
    Scripted stand-in for provider HTTP APIs, plugged in through httpx.MockTransport.

    Routes are matched on method and URL without query string. A route answers with a
    JSON body, or with whatever a callable returns (httpx.Response or a coroutine for one).
    Unrouted requests answer 404 so a missing script shows up as a provider failure.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Tuple[Responder, int]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, url: str, body: Responder, status: int = 200) -> "FakeProviderAPI":
        self.routes[(method.upper(), url)] = (body, status)
        return self

    def calls_to(self, url: str) -> List[httpx.Request]:
        return [r for r in self.calls if str(r.url).split("?", 1)[0] == url]

    def handler(self, request: httpx.Request):
        self.calls.append(request)
        key = (request.method, str(request.url).split("?", 1)[0])
        if key not in self.routes:
            return httpx.Response(404, json={"error": {"message": f"no route for {key}"}})
        body, status = self.routes[key]
        if callable(body):
            return body(request)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_settings(**overrides) -> Settings:
    providers = {
        p: ProviderConfig(
            platform=p,
            client_id=f"{p.value}-client",
            client_secret=f"{p.value}-secret",
            redirect_uri=f"http://localhost:8000/integrations/oauth/{p.value}/callback",
            scopes=DEFAULT_SCOPES[p],
        )
        for p in Platform
    }
    values = dict(
        secret_key="test-secret",
        state_secret="test-state-secret",
        token_encryption_key=Fernet.generate_key().decode(),
        client_origin="http://client.test",
        providers=providers,
    )
    values.update(overrides)
    return Settings(**values)
