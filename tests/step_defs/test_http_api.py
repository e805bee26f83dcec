"""
Step definitions for the HTTP API feature.

These tests drive the FastAPI app through TestClient against a
temporary database.
"""
import json

import pytest
from fastapi.testclient import TestClient
from pytest_bdd import given, parsers, scenarios, then, when

import proxy_engine.api as api_module
from proxy_engine.api import app
from proxy_engine.identity import Signer

# Load scenarios from feature file
scenarios("../features/http_api.feature")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def api_client(temp_db, monkeypatch):
    """Create a test client bound to a fresh engine on temp_db."""
    monkeypatch.setattr(api_module, "DEFAULT_DB_PATH", temp_db)
    monkeypatch.setattr(api_module, "_engine", None)
    yield TestClient(app)
    if api_module._engine is not None:
        api_module._engine.close()


def _deploy(api_client, test_context, schema_source, name: str, deployer: str):
    response = api_client.post(
        "/schemas",
        json={"source": schema_source(name), "deployer": deployer},
    )
    test_context["response"] = response
    if response.status_code == 201:
        test_context["schema_id"] = response.json()["schema_id"]
    return response


# =============================================================================
# Given Steps
# =============================================================================


@given("a fresh engine database")
def fresh_database(api_client, test_context):
    test_context["client"] = api_client


@given(parsers.parse('"{deployer}" has deployed the "{name}" schema over HTTP'))
def deployed_over_http(api_client, test_context, schema_source, deployer: str, name: str):
    response = _deploy(api_client, test_context, schema_source, name, deployer)
    assert response.status_code == 201, response.text


@given(parsers.parse('a signing key deployed the "{name}" schema over HTTP'))
def key_deployed_over_http(api_client, test_context, schema_source, name: str):
    signer = Signer.generate()
    test_context["signer"] = signer
    response = _deploy(api_client, test_context, schema_source, name, signer.identity)
    assert response.status_code == 201, response.text


# =============================================================================
# When Steps
# =============================================================================


@when(parsers.parse('I request GET "{path}"'))
def request_get(api_client, test_context, path: str):
    test_context["response"] = api_client.get(path)


@when(parsers.parse('"{deployer}" deploys the "{name}" schema over HTTP'))
def deploy_over_http(api_client, test_context, schema_source, deployer: str, name: str):
    _deploy(api_client, test_context, schema_source, name, deployer)


@when("I describe the deployed schema over HTTP")
def describe_over_http(api_client, test_context):
    test_context["response"] = api_client.get(f"/schemas/{test_context['schema_id']}")


@when(parsers.parse('"{caller}" calls "{procedure}" over HTTP with arguments {args}'))
def call_over_http(api_client, test_context, caller: str, procedure: str, args: str):
    test_context["response"] = api_client.post(
        f"/schemas/{test_context['schema_id']}/procedures/{procedure}",
        json={"args": json.loads(args), "caller": caller},
    )


@when(parsers.parse('the key posts a signed call to "{procedure}"'))
def post_signed(api_client, test_context, procedure: str):
    envelope = test_context["signer"].sign_call(test_context["schema_id"], procedure, [])
    test_context["response"] = api_client.post("/calls", json=envelope.model_dump(mode="json"))


@when(parsers.parse('the key posts a tampered signed call to "{procedure}" with arguments {args}'))
def post_tampered(api_client, test_context, procedure: str, args: str):
    envelope = test_context["signer"].sign_call(test_context["schema_id"], procedure, json.loads(args))
    body = envelope.model_dump(mode="json")
    body["payload"]["height"] = body["payload"]["height"] + 1
    test_context["response"] = api_client.post("/calls", json=body)


# =============================================================================
# Then Steps
# =============================================================================


@then(parsers.parse("the response status is {status:d}"))
def response_status(test_context, status: int):
    response = test_context["response"]
    assert response.status_code == status, response.text


@then(parsers.parse('the response names schema "{name}" owned by "{owner}"'))
def response_names_schema(test_context, name: str, owner: str):
    data = test_context["response"].json()
    assert data["name"] == name
    assert data["owner"] == owner
    assert data["schema_id"].startswith("x")


@then(parsers.parse('the response error kind is "{kind}"'))
def response_error_kind(test_context, kind: str):
    detail = test_context["response"].json()["detail"]
    assert detail["error_kind"] == kind


@then(parsers.parse("the response lists {count:d} schema"))
def response_lists(test_context, count: int):
    data = test_context["response"].json()
    assert data["count"] == count
    assert len(data["schemas"]) == count


@then(parsers.parse('the described capabilities include "{cap_id}"'))
def described_capabilities(test_context, cap_id: str):
    capabilities = {c["id"]: c for c in test_context["response"].json()["capabilities"]}
    assert cap_id in capabilities
    assert capabilities[cap_id]["externally_callable"] is True


@then(parsers.parse("the response delta has {count:d} entry"))
def response_delta(test_context, count: int):
    data = test_context["response"].json()
    assert data["ok"] is True
    assert len(data["delta"]) == count


# =============================================================================
# Configuration
# =============================================================================


def test_engine_uses_the_configured_database(tmp_path, monkeypatch, schema_source):
    db_path = tmp_path / "from_toml.db"
    config = tmp_path / "engine.toml"
    config.write_text(f'[engine]\ndb_path = "{db_path}"\n')
    monkeypatch.setenv("PROXY_ENGINE_CONFIG", str(config))
    monkeypatch.delenv("PROXY_ENGINE_DB", raising=False)
    monkeypatch.setattr(api_module, "DEFAULT_DB_PATH", None)
    monkeypatch.setattr(api_module, "_engine", None)

    try:
        client = TestClient(app)
        response = client.post("/schemas", json={"source": schema_source("ledger"), "deployer": "dev"})
        assert response.status_code == 201, response.text
        assert api_module.get_engine().db_path == str(db_path)
    finally:
        if api_module._engine is not None:
            api_module._engine.close()
    assert db_path.exists()


def test_wrongly_shaped_source_is_a_bad_request(api_client):
    response = api_client.post("/schemas", json={"source": "name: bad\ntables: [users]\n", "deployer": "dev"})
    assert response.status_code == 400
    assert response.json()["detail"]["error_kind"] == "CompileError"
