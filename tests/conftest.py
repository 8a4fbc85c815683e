"""
Shared fixtures: an in-memory Cloudflare API and a fake iptables view.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

import pytest
import requests

import fail2ban_cloudflare_sync as sync

API_URL = "https://api.cloudflare.com/client/v4"


def make_response(payload=None, status_code=200, body: Optional[bytes] = None) -> requests.Response:
    """Build a real requests.Response carrying a JSON payload or raw body."""
    response = requests.Response()
    response.status_code = status_code
    if body is None:
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
    response._content = body
    response.encoding = "utf-8"
    return response


def envelope(result=None, success=True, errors=None, **extra) -> dict:
    data = {"success": success, "errors": errors or [], "messages": [], "result": result}
    data.update(extra)
    return data


@dataclass
class Call:
    method: str
    path: str
    json: object
    headers: dict
    params: Optional[dict]
    timeout: object


class FakeCloudflare:
    """
    Stands in for a requests.Session talking to Cloudflare.

    Keeps lists per account and rules per zone, records every call, and lets
    tests override the response of a given (method, path).
    """

    def __init__(self):
        self.lists = defaultdict(list)
        self.items = {}
        self.rules = defaultdict(list)
        self.overrides = {}
        self.calls = []
        self._next_id = 1

    def _new_id(self, prefix: str) -> str:
        new_id = f"{prefix}{self._next_id}"
        self._next_id += 1
        return new_id

    def calls_to(self, method: str, fragment: str = "") -> list:
        return [c for c in self.calls if c.method == method and fragment in c.path]

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        path = url.split("/client/v4", 1)[1]
        self.calls.append(Call(method, path, json, headers or {}, params, timeout))

        override = self.overrides.get((method, path))
        if override is not None:
            if isinstance(override, Exception):
                raise override
            return override

        parts = path.strip("/").split("/")
        if parts[0] == "accounts" and parts[2:4] == ["rules", "lists"]:
            account = parts[1]
            if len(parts) == 4 and method == "GET":
                return make_response(envelope(list(self.lists[account])))
            if len(parts) == 4 and method == "POST":
                created = {"id": self._new_id("list"), **json}
                self.lists[account].append(created)
                return make_response(envelope(created))
            if len(parts) == 6 and parts[5] == "items" and method == "PUT":
                self.items[parts[4]] = list(json)
                return make_response(envelope({"operation_id": self._new_id("op")}))

        if parts[0] == "zones" and parts[2:4] == ["firewall", "rules"]:
            zone = parts[1]
            if method == "GET":
                return make_response(envelope(list(self.rules[zone])))
            if method == "POST":
                created = [{"id": self._new_id("rule"), **rule} for rule in json]
                self.rules[zone].extend(created)
                return make_response(envelope(created))

        return make_response(
            envelope(success=False, errors=[{"code": 7003, "message": "No route for that URI"}]),
            status_code=404,
        )


class FakeInspector:
    """Firewall view backed by a dict of chain name -> rules."""

    def __init__(self, chains: dict):
        self.chains = chains

    def list_chains(self, prefix):
        return [name for name in self.chains if name.startswith(prefix)]

    def list_rules(self, chain):
        return [
            sync.FirewallRule(chain=chain, target=target, source=source)
            for target, source in self.chains[chain]
        ]


@pytest.fixture
def logger():
    return logging.getLogger(sync.LOGGER_NAME)


@pytest.fixture
def fake_cf():
    return FakeCloudflare()


@pytest.fixture
def domain_a():
    return sync.DomainConfig(
        name="a.com", email="admin@a.com", api_key="key-a", account_id="acc-a", zone_id="zone-a"
    )


@pytest.fixture
def domain_b():
    return sync.DomainConfig(
        name="b.com", email="admin@b.com", api_key="key-b", account_id="acc-b", zone_id="zone-b"
    )


@pytest.fixture
def make_client(fake_cf, logger):
    def factory(domain):
        return sync.CloudflareClient(domain, fake_cf, base_url=API_URL, timeout=30, logger=logger)
    return factory


@pytest.fixture
def config():
    return sync.Config()
