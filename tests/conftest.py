import json
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlsplit

import pytest
import requests

from joptool import JoplinClient


class Call(NamedTuple):
    method: str
    port: Optional[int]
    path: str
    params: Dict[str, Any]
    json: Optional[Dict[str, Any]]
    timeout: Optional[float]


def make_response(
    status_code: int = 200,
    payload: Any = None,
    text: Optional[str] = None,
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status_code
    resp.encoding = "utf-8"
    if payload is not None:
        resp._content = json.dumps(payload).encode("utf-8")
        resp.headers["Content-Type"] = "application/json; charset=utf-8"
    elif text is not None:
        resp._content = text.encode("utf-8")
        resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    else:
        resp._content = b""
    return resp


def page(items: List[Dict[str, Any]], has_more: bool = False) -> requests.Response:
    return make_response(payload={"items": items, "has_more": has_more})


Reply = Union[requests.Response, Exception]


class FakeSession:
    """Stands in for requests.Session and replays canned replies.

    Replies are queued per (method, port, path); the last reply of a queue is
    repeated. Requests without a route fail like a closed port.
    """

    def __init__(self) -> None:
        self.headers: Dict[str, str] = {}
        self.routes: Dict[Tuple[str, int, str], List[Reply]] = {}
        self.calls: List[Call] = []

    def add(self, method: str, path: str, *replies: Reply, port: int = 41184) -> None:
        self.routes.setdefault((method, port, path), []).extend(replies)

    def request(self, method, url, params=None, json=None, timeout=None):
        parts = urlsplit(url)
        self.calls.append(Call(method, parts.port, parts.path, dict(params or {}), json, timeout))
        queue = self.routes.get((method, parts.port, parts.path))
        if not queue:
            raise requests.ConnectionError(f"Connection refused: {url}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [c for c in self.calls if c.method == method and c.path == path]


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(session: FakeSession) -> JoplinClient:
    return JoplinClient(41184, "secret", session=session)
