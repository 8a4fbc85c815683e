"""
Tests for the Cloudflare client, list management and rule management.
"""

import pytest
import requests

import fail2ban_cloudflare_sync as sync
from conftest import envelope, make_response

LISTS_PATH = "/accounts/acc-a/rules/lists"
RULES_PATH = "/zones/zone-a/firewall/rules"


# --- Response envelope checks ---

def test_request_sends_auth_headers_and_timeout(fake_cf, make_client, domain_a):
    make_client(domain_a).list_ip_lists()

    call = fake_cf.calls[0]
    assert call.headers["X-Auth-Email"] == "admin@a.com"
    assert call.headers["X-Auth-Key"] == "key-a"
    assert call.timeout == 30


def test_empty_body_is_transport_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response(body=b"")
    with pytest.raises(sync.TransportError) as exc:
        make_client(domain_a).list_ip_lists()
    assert exc.value.domain == "a.com"
    assert "empty response" in str(exc.value)


def test_non_json_body_is_transport_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response(body=b"<html>bad gateway</html>", status_code=502)
    with pytest.raises(sync.TransportError):
        make_client(domain_a).list_ip_lists()


def test_non_object_envelope_is_transport_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response([1, 2, 3])
    with pytest.raises(sync.TransportError):
        make_client(domain_a).list_ip_lists()


def test_request_exception_is_transport_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = requests.ConnectionError("connection refused")
    with pytest.raises(sync.TransportError) as exc:
        make_client(domain_a).list_ip_lists()
    assert "connection refused" in str(exc.value)


def test_success_false_is_api_error_with_provider_message(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response(
        envelope(success=False, errors=[{"code": 10000, "message": "Authentication error"}]),
        status_code=403,
    )
    with pytest.raises(sync.ApiError) as exc:
        make_client(domain_a).list_ip_lists()
    assert exc.value.message == "Authentication error (code 10000)"
    assert exc.value.status_code == 403
    assert exc.value.operation == "list_lists"


def test_api_error_without_message_uses_fallback(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response({"success": False})
    with pytest.raises(sync.ApiError) as exc:
        make_client(domain_a).list_ip_lists()
    assert "no error message" in exc.value.message


@pytest.mark.parametrize("success", ["true", 1, None])
def test_non_boolean_success_is_api_error(fake_cf, make_client, domain_a, success):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response({"success": success, "result": []})
    with pytest.raises(sync.ApiError):
        make_client(domain_a).list_ip_lists()


def test_malformed_result_is_transport_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response(envelope(result={"not": "a list"}))
    with pytest.raises(sync.TransportError):
        make_client(domain_a).list_ip_lists()


def test_api_error_message_helper():
    assert sync.api_error_message({"errors": [{"message": "Invalid list name"}]}) == "Invalid list name"
    assert "no error message" in sync.api_error_message({"errors": []})
    assert "no error message" in sync.api_error_message({"errors": "oops"})


def test_list_firewall_rules_follows_pagination(fake_cf, make_client, domain_a):
    pages = {
        1: make_response(envelope([{"id": "r1", "description": "one"}], result_info={"page": 1, "total_pages": 2})),
        2: make_response(envelope([{"id": "r2", "description": "two"}], result_info={"page": 2, "total_pages": 2})),
    }

    class PagedSession:
        def __init__(self):
            self.params = []

        def request(self, method, url, params=None, **kwargs):
            self.params.append(params)
            return pages[params["page"]]

    session = PagedSession()
    client = sync.CloudflareClient(domain_a, session)
    rules = client.list_firewall_rules()

    assert [r["id"] for r in rules] == ["r1", "r2"]
    assert [p["page"] for p in session.params] == [1, 2]
    assert all(p["per_page"] == 100 for p in session.params)


# --- Remote List Manager ---

def test_ensure_list_creates_missing_list(fake_cf, make_client, domain_a):
    list_id = sync.ensure_list(make_client(domain_a), "fail2ban", "Blocked IPs from Fail2Ban")

    creates = fake_cf.calls_to("POST", "/rules/lists")
    assert len(creates) == 1
    assert creates[0].json == {"name": "fail2ban", "kind": "ip", "description": "Blocked IPs from Fail2Ban"}
    assert list_id == fake_cf.lists["acc-a"][0]["id"]


def test_ensure_list_is_idempotent(fake_cf, make_client, domain_a):
    client = make_client(domain_a)
    first = sync.ensure_list(client, "fail2ban", "desc")
    second = sync.ensure_list(client, "fail2ban", "desc")

    assert first == second
    assert len(fake_cf.calls_to("POST", "/rules/lists")) == 1


def test_ensure_list_finds_existing_by_name(fake_cf, make_client, domain_a):
    fake_cf.lists["acc-a"] = [
        {"id": "other", "name": "allowlist", "kind": "ip"},
        {"id": "existing", "name": "fail2ban", "kind": "ip"},
    ]
    assert sync.ensure_list(make_client(domain_a), "fail2ban", "desc") == "existing"
    assert fake_cf.calls_to("POST") == []


def test_ensure_list_query_failure_does_not_create(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", LISTS_PATH)] = make_response(
        envelope(success=False, errors=[{"message": "boom"}])
    )
    with pytest.raises(sync.ApiError):
        sync.ensure_list(make_client(domain_a), "fail2ban", "desc")
    assert fake_cf.calls_to("POST") == []


def test_ensure_list_create_without_id_is_validation_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("POST", LISTS_PATH)] = make_response(envelope({"name": "fail2ban"}))
    with pytest.raises(sync.ValidationError) as exc:
        sync.ensure_list(make_client(domain_a), "fail2ban", "desc")
    assert exc.value.operation == "create_list"


def test_replace_list_contents_sends_full_payload(fake_cf, make_client, domain_a):
    count = sync.replace_list_contents(
        make_client(domain_a), "list9", {"10.0.0.2", "9.9.9.9", "10.0.0.10"}, "Blocked by Fail2Ban"
    )

    put = fake_cf.calls_to("PUT")[0]
    assert put.path == "/accounts/acc-a/rules/lists/list9/items"
    assert put.json == [
        {"ip": "9.9.9.9", "comment": "Blocked by Fail2Ban"},
        {"ip": "10.0.0.2", "comment": "Blocked by Fail2Ban"},
        {"ip": "10.0.0.10", "comment": "Blocked by Fail2Ban"},
    ]
    assert count == 3


def test_replace_list_contents_with_empty_set(fake_cf, make_client, domain_a):
    """No banned IPs locally empties the remote list instead of failing."""
    count = sync.replace_list_contents(make_client(domain_a), "list9", set(), "c")

    assert count == 0
    assert fake_cf.calls_to("PUT")[0].json == []
    assert fake_cf.items["list9"] == []


def test_replace_list_contents_failure_raises(fake_cf, make_client, domain_a):
    fake_cf.overrides[("PUT", "/accounts/acc-a/rules/lists/list9/items")] = make_response(body=b"  ")
    with pytest.raises(sync.TransportError):
        sync.replace_list_contents(make_client(domain_a), "list9", {"1.2.3.4"}, "c")


# --- Access Rule Ensurer ---

def test_build_block_rule():
    assert sync.build_block_rule("fail2ban", "Blocked IPs", "Filter IPs") == {
        "action": "block",
        "description": "Blocked IPs",
        "priority": 1,
        "filter": {
            "expression": "ip.src in $fail2ban",
            "paused": False,
            "description": "Filter IPs",
        },
    }


def test_ensure_rule_creates_missing_rule(fake_cf, make_client, domain_a):
    created = sync.ensure_rule(make_client(domain_a), "fail2ban", "Blocked IPs", "Filter IPs")

    assert created is True
    post = fake_cf.calls_to("POST", RULES_PATH)[0]
    assert post.json == [sync.build_block_rule("fail2ban", "Blocked IPs", "Filter IPs")]


def test_ensure_rule_is_idempotent_on_description(fake_cf, make_client, domain_a):
    client = make_client(domain_a)
    assert sync.ensure_rule(client, "fail2ban", "Blocked IPs", "f") is True
    assert sync.ensure_rule(client, "fail2ban", "Blocked IPs", "f") is False

    descriptions = [r["description"] for r in fake_cf.rules["zone-a"]]
    assert descriptions.count("Blocked IPs") == 1


def test_existing_rule_is_not_updated(fake_cf, make_client, domain_a, caplog):
    """A rule with a matching description is left alone, even if it differs."""
    fake_cf.rules["zone-a"] = [
        {"id": "r1", "description": "Blocked IPs", "action": "challenge",
         "filter": {"expression": "ip.src in $old_list"}},
    ]
    with caplog.at_level("INFO", logger=sync.LOGGER_NAME):
        created = sync.ensure_rule(make_client(domain_a), "fail2ban", "Blocked IPs", "f")

    assert created is False
    assert fake_cf.calls_to("POST") == []
    assert fake_cf.calls_to("PUT") == []
    assert any("already exists" in r.getMessage() for r in caplog.records)
    assert any(getattr(r, "outcome", None) == "exists" and r.domain == "a.com" for r in caplog.records)


def test_ensure_rule_query_failure(fake_cf, make_client, domain_a):
    fake_cf.overrides[("GET", RULES_PATH)] = make_response(
        envelope(success=False, errors=[{"message": "zone not found"}]), status_code=404
    )
    with pytest.raises(sync.ApiError):
        sync.ensure_rule(make_client(domain_a), "fail2ban", "Blocked IPs", "f")
    assert fake_cf.calls_to("POST") == []


def test_ensure_rule_create_without_id_is_validation_error(fake_cf, make_client, domain_a):
    fake_cf.overrides[("POST", RULES_PATH)] = make_response(envelope([]))
    with pytest.raises(sync.ValidationError):
        sync.ensure_rule(make_client(domain_a), "fail2ban", "Blocked IPs", "f")


# --- HTTP session ---

def test_http_session_never_retries_creates():
    session = sync.create_http_session(max_retries=3)
    retry = session.get_adapter("https://api.cloudflare.com").max_retries

    assert retry.total == 3
    assert "POST" not in retry.allowed_methods
    assert {"GET", "PUT"} <= set(retry.allowed_methods)
    assert 429 in retry.status_forcelist
    assert retry.raise_on_status is False


def test_http_session_defaults_to_no_retry():
    retry = sync.create_http_session().get_adapter("https://api.cloudflare.com").max_retries
    assert retry.total == 0
