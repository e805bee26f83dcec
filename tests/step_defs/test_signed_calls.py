"""
Step definitions for the Signed calls feature.

These tests verify:
- a verified signer becomes the caller seen by access control
- a tampered envelope fails before anything runs
- the envelope digest is the transaction id, so replays collide
"""
import hashlib
import json

from pytest_bdd import given, parsers, scenarios, then, when

from proxy_engine.identity import Signer

# Load scenarios from feature file
scenarios("../features/signed_calls.feature")


# =============================================================================
# Given Steps
# =============================================================================


@given(parsers.parse('a signing key "{name}"'))
def signing_key(test_context, name: str):
    test_context.setdefault("signers", {})[name] = Signer.from_seed(hashlib.sha256(name.encode()).digest())


@given(parsers.parse('the {schema:w} schema is deployed by key "{name}"'))
def deployed_by_key(test_context, schema_source, schema: str, name: str):
    signer = test_context["signers"][name]
    test_context["schemas"][schema] = test_context["engine"].deploy(
        schema_source(schema), deployer=signer.identity
    )


# =============================================================================
# When Steps
# =============================================================================


@when(parsers.parse('key "{name}" signs a call to "{procedure}" on the {schema:w}'))
def sign_call(test_context, name: str, procedure: str, schema: str):
    signer = test_context["signers"][name]
    test_context["envelope"] = signer.sign_call(test_context["schemas"][schema], procedure, [])


@when(parsers.parse('key "{name}" signs a call to "{procedure}" on the {schema:w} with arguments {args}'))
def sign_call_with_args(test_context, name: str, procedure: str, schema: str, args: str):
    signer = test_context["signers"][name]
    test_context["envelope"] = signer.sign_call(
        test_context["schemas"][schema], procedure, json.loads(args)
    )


@when(parsers.parse("the envelope arguments are replaced with {args}"))
def tamper_envelope(test_context, args: str):
    envelope = test_context["envelope"]
    payload = envelope.payload.model_copy(update={"args": json.loads(args)})
    test_context["envelope"] = envelope.model_copy(update={"payload": payload})


@when("the envelope is submitted")
def submit_envelope(test_context):
    test_context["result"] = test_context["engine"].call_signed(
        test_context["envelope"],
        output_sink=test_context["captured_output"].append,
    )


# =============================================================================
# Then Steps
# =============================================================================


@then("the transaction id is the envelope digest")
def txid_is_digest(test_context):
    assert test_context["result"].txid == test_context["envelope"].digest()
