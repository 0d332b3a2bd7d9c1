import json
from typing import Dict, List, Optional

import pytest
import requests

from scavenger_consolidator.errors import AuthenticationError
from scavenger_consolidator.models import SourceAddress


DEST = "addr1qdestination0000000000000000000000000000000000000000dest"


def make_addresses(n: int, start: int = 0) -> List[SourceAddress]:
    return [SourceAddress(i, f"addr1qsource{i:04d}{'x' * 40}") for i in range(start, start + n)]


class FakeResponse:
    def __init__(self, status_code: int, body=None):
        self.status_code = status_code
        if body is None:
            self.text = ""
        elif isinstance(body, str):
            self.text = body
        else:
            self.text = json.dumps(body)
        self.headers = {}

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """Scripted stand-in for requests.Session keyed by source address.

    ``responses`` maps a source address to a FakeResponse or an exception
    instance; anything unscripted gets a 200 with zero solutions.
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None, on_post=None):
        self.responses = responses or {}
        self.headers = {}
        self.calls: List[str] = []
        self.on_post = on_post

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(url)
        source = url.rstrip("/").split("/")[-2]
        if self.on_post:
            self.on_post(source)
        resp = self.responses.get(source, FakeResponse(200, {"solutions_consolidated": 0}))
        if isinstance(resp, Exception):
            raise resp
        return resp

    @property
    def posted_sources(self) -> List[str]:
        return [u.rstrip("/").split("/")[-2] for u in self.calls]


class FakeSigner:
    def __init__(self, password: str = "hunter2", fail_indices=(), on_sign=None):
        self.password = password
        self.fail_indices = set(fail_indices)
        self.requested: List[int] = []
        self.on_sign = on_sign

    def sign_batch(self, password, indices, destination):
        if password != self.password:
            raise AuthenticationError("Failed to decrypt wallet. Incorrect password?")
        self.requested = list(indices)
        if self.on_sign:
            self.on_sign()
        return {i: f"84a4{i:04x}deadbeef" for i in indices if i not in self.fail_indices}


@pytest.fixture
def dest():
    return DEST


@pytest.fixture
def no_sleep():
    calls = []
    return calls.append, calls


@pytest.fixture
def timeout_exc():
    return requests.Timeout("read timed out")
