"""Shared fixtures and fakes for the extraction tests"""

import json
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Make the project root importable when running pytest from the tests directory
sys.path.insert(0, str(Path(__file__).parent.parent))

from bypass.rule_store import RuleStore
from utils.network import NetworkSession, create_client

FIXTURES = Path(__file__).parent / "fixtures"


def load_fixture(filename: str) -> str:
    with open(FIXTURES / filename, 'r', encoding='utf-8') as f:
        return f.read()


def write_catalog(path: Path, data) -> Path:
    path.write_text(json.dumps(data), encoding='utf-8')
    return path


def mock_session(handler: Callable[[httpx.Request], httpx.Response]) -> NetworkSession:
    """NetworkSession whose client answers through ``handler``"""
    return NetworkSession(client=create_client(transport=httpx.MockTransport(handler)))


class RecordingHandler:
    """MockTransport handler that records requests and answers from a callable"""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def hosts(self) -> List[str]:
        return [request.url.host for request in self.requests]


@pytest.fixture
def make_store(tmp_path):
    """Build a RuleStore over a temporary base (and optional override) catalog"""
    def _make(base, override=None) -> RuleStore:
        base_path = write_catalog(tmp_path / "sites.json", base)
        override_path = tmp_path / "data" / "sites_updated.json"
        if override is not None:
            override_path.parent.mkdir(parents=True, exist_ok=True)
            write_catalog(override_path, override)
        return RuleStore(base_path=str(base_path), override_path=str(override_path))
    return _make
