import hashlib
import hmac

import pytest

from app.modules.payments.domain.payments.webhook_security import (
    build_manifest,
    extract_resource_id,
    parse_signature_header,
    verify_webhook_signature,
)

SECRET = "whsec-test-secret"
REQUEST_ID = "bb56a2f1-6aae-46ac-982e-9dcd3581d08e"
RESOURCE_ID = "123456789"
TS = "1742505638683"


def _sign(resource_id: str = RESOURCE_ID, request_id: str = REQUEST_ID, ts: str = TS) -> str:
    return hmac.new(
        SECRET.encode(), build_manifest(resource_id, request_id, ts).encode(), hashlib.sha256
    ).hexdigest()


def _header(v1: str, ts: str = TS) -> str:
    return f"ts={ts},v1={v1}"


def test_manifest_format():
    assert build_manifest("1", "req", "99") == "id:1;request-id:req;ts:99;"


def test_parse_signature_header_tolerates_spaces_and_unknown_parts():
    parts = parse_signature_header(" ts=1 , v1=abc , v2=zzz, junk")

    assert parts.ts == "1"
    assert parts.v1 == "abc"


def test_valid_signature_is_accepted():
    assert verify_webhook_signature(_header(_sign()), REQUEST_ID, RESOURCE_ID, SECRET)


def test_uppercase_hex_digest_is_accepted():
    assert verify_webhook_signature(_header(_sign().upper()), REQUEST_ID, RESOURCE_ID, SECRET)


@pytest.mark.parametrize("secret", [None, "", "   "])
def test_no_secret_configured_accepts_everything(secret):
    assert verify_webhook_signature(None, None, None, secret)


@pytest.mark.parametrize(
    "header, request_id, resource_id",
    [
        (None, REQUEST_ID, RESOURCE_ID),
        (_header(_sign()), None, RESOURCE_ID),
        (_header(_sign()), REQUEST_ID, ""),
        (f"v1={_sign()}", REQUEST_ID, RESOURCE_ID),
        (f"ts={TS}", REQUEST_ID, RESOURCE_ID),
    ],
)
def test_missing_parts_are_rejected(header, request_id, resource_id):
    assert not verify_webhook_signature(header, request_id, resource_id, SECRET)


def test_single_character_mutation_of_digest_is_rejected():
    digest = _sign()
    for index in range(len(digest)):
        flipped = "0" if digest[index] != "0" else "1"
        mutated = digest[:index] + flipped + digest[index + 1 :]
        assert not verify_webhook_signature(_header(mutated), REQUEST_ID, RESOURCE_ID, SECRET)


@pytest.mark.parametrize(
    "request_id, resource_id, ts",
    [
        (REQUEST_ID[:-1] + "f", RESOURCE_ID, TS),
        (REQUEST_ID, "123456780", TS),
        (REQUEST_ID, RESOURCE_ID, "1742505638684"),
    ],
)
def test_manifest_mutation_is_rejected(request_id, resource_id, ts):
    assert not verify_webhook_signature(_header(_sign(), ts=ts), request_id, resource_id, SECRET)


@pytest.mark.parametrize("v1", ["zz" * 32, _sign()[:-2], _sign() + "00"])
def test_malformed_or_wrong_length_digest_is_rejected(v1):
    assert not verify_webhook_signature(_header(v1), REQUEST_ID, RESOURCE_ID, SECRET)


def test_resource_id_prefers_query_data_id():
    assert extract_resource_id({"data.id": "q1", "id": "x"}, {"data": {"id": "b1"}}) == "q1"


def test_resource_id_falls_back_to_body_then_query_id():
    assert extract_resource_id({}, {"data": {"id": 42}}) == "42"
    assert extract_resource_id({"id": "plain"}, {"data": {"id": True}}) == "plain"
    assert extract_resource_id({}, ["not", "a", "dict"]) == ""
