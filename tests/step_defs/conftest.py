"""
Step definitions shared by every engine feature.

Steps here address schemas by the alias they were deployed under
("the proxy", "the ledger") and keep the last CallResult in
test_context["result"].
"""
import json

import pytest
from pytest_bdd import given, parsers, then, when

from proxy_engine.config import EngineConfig
from proxy_engine.kernel.engine import ProxyEngine


@pytest.fixture
def test_context():
    """Shared context for passing data between steps."""
    return {
        "db_path": None,
        "engine": None,
        "schemas": {},
        "result": None,
        "deploy_error": None,
        "captured_output": [],
    }


def _open(test_context, db_path: str, **settings) -> ProxyEngine:
    engine = ProxyEngine(db_path, config=EngineConfig(db_path=db_path, **settings))
    test_context["db_path"] = db_path
    test_context["engine"] = engine
    return engine


@pytest.fixture(autouse=True)
def close_engine(test_context):
    yield
    if test_context["engine"] is not None:
        test_context["engine"].close()


@pytest.fixture
def call_procedure(test_context):
    """Run one top-level call and keep its CallResult as the current result."""

    def _call(caller: str, schema_id: str, procedure: str, args=None):
        test_context["result"] = test_context["engine"].call(
            schema_id,
            procedure,
            args if args is not None else [],
            caller=caller,
            output_sink=test_context["captured_output"].append,
        )
        return test_context["result"]

    return _call


# =============================================================================
# Given Steps - Engine Setup
# =============================================================================


@given("a fresh engine")
def fresh_engine(test_context, temp_db):
    _open(test_context, temp_db)


@given(parsers.parse("a fresh engine with a maximum call depth of {depth:d}"))
def fresh_engine_with_depth(test_context, temp_db, depth: int):
    _open(test_context, temp_db, max_call_depth=depth)


@given(parsers.parse('the {name:w} schema is deployed by "{deployer}"'))
def schema_deployed(test_context, schema_source, name: str, deployer: str):
    schema_id = test_context["engine"].deploy(schema_source(name), deployer=deployer)
    test_context["schemas"][name] = schema_id


@given(parsers.parse('implementation "{source}" is deployed as "{alias}"'))
def implementation_deployed(test_context, schema_source, source: str, alias: str):
    schema_id = test_context["engine"].deploy(schema_source(source), deployer="dev")
    test_context["schemas"][alias] = schema_id


# =============================================================================
# When Steps - Calls
# =============================================================================


@given(parsers.parse('"{caller}" calls "{procedure}" on the {schema:w}'))
@when(parsers.parse('"{caller}" calls "{procedure}" on the {schema:w}'))
def call_without_args(test_context, call_procedure, caller: str, procedure: str, schema: str):
    call_procedure(caller, test_context["schemas"][schema], procedure)


@given(parsers.parse('"{caller}" calls "{procedure}" on the {schema:w} with arguments {args}'))
@when(parsers.parse('"{caller}" calls "{procedure}" on the {schema:w} with arguments {args}'))
def call_with_args(test_context, call_procedure, caller: str, procedure: str, schema: str, args: str):
    call_procedure(caller, test_context["schemas"][schema], procedure, json.loads(args))


# =============================================================================
# Then Steps - Call Outcomes
# =============================================================================


@then("the call succeeds")
def call_succeeds(test_context):
    result = test_context["result"]
    assert result.ok, f"{result.error_kind}: {result.error_message}"


@then(parsers.parse('the call fails with "{kind}"'))
def call_fails_with(test_context, kind: str):
    result = test_context["result"]
    assert not result.ok, f"Expected {kind}, call succeeded with {result.value!r}"
    assert result.error_kind == kind, f"{result.error_kind}: {result.error_message}"


@then(parsers.parse('the error message is "{message}"'))
def error_message_is(test_context, message: str):
    assert test_context["result"].error_message == message


@then(parsers.parse("the result is {value}"))
def result_is(test_context, value: str):
    result = test_context["result"]
    assert result.ok, f"{result.error_kind}: {result.error_message}"
    assert result.value == json.loads(value)


@pytest.fixture
def table_rows(test_context):
    """Committed rows of one of a deployed schema's tables."""

    def _rows(schema: str, table: str):
        return test_context["engine"].dump_table(test_context["schemas"][schema], table)

    return _rows


@then(parsers.parse("the ledger holds {count:d} entry"))
@then(parsers.parse("the ledger holds {count:d} entries"))
def ledger_holds(table_rows, count: int):
    assert len(table_rows("ledger", "entries")) == count


# =============================================================================
# Proxy Steps - shared by the proxy and call depth features
# =============================================================================


@given(parsers.parse('"{caller}" points the proxy at "{alias}"'))
@when(parsers.parse('"{caller}" points the proxy at "{alias}"'))
def point_proxy(test_context, call_procedure, caller: str, alias: str):
    schemas = test_context["schemas"]
    call_procedure(caller, schemas["proxy"], "set_target", [schemas[alias]])


@given(parsers.parse('"{caller}" points the proxy at itself'))
def point_proxy_at_itself(test_context, call_procedure, caller: str):
    proxy_id = test_context["schemas"]["proxy"]
    result = call_procedure(caller, proxy_id, "set_target", [proxy_id])
    assert result.ok, f"{result.error_kind}: {result.error_message}"


@when(parsers.parse('"{caller}" creates user "{name}" through the proxy'))
def create_user_through_proxy(test_context, call_procedure, caller: str, name: str):
    call_procedure(caller, test_context["schemas"]["proxy"], "create_user", [name])


@when(parsers.parse('"{caller}" lists users through the proxy'))
def list_users_through_proxy(test_context, call_procedure, caller: str):
    call_procedure(caller, test_context["schemas"]["proxy"], "get_users")
