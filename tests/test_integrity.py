"""
Tests for canonical hashing, manifest signatures and identifiers.
"""
import math
from datetime import datetime

import pytest

from computegrid.core.integrity import (
    canary_id_for,
    canonical_hash,
    canonical_json,
    generate_task_id,
    is_canary_id,
    manifest_timestamp,
    sha256_hex,
    sign_manifest,
    verify_manifest,
)

SECRET = "unit-test-secret"


def _manifest(**overrides):
    manifest = {
        "task_id": "task_abc_0123456789abcdef",
        "task_type": "hash_compute",
        "input_hash": "f" * 64,
        "expires_at": "2026-01-01T00:00:00.000Z",
    }
    manifest.update(overrides)
    return manifest


class TestCanonicalHash:
    def test_key_order_does_not_matter(self):
        assert canonical_hash({"a": 1, "b": 2}) == canonical_hash({"b": 2, "a": 1})

    def test_nested_key_order_does_not_matter(self):
        left = {"outer": {"x": [1, 2, {"p": 1, "q": 2}], "y": None}}
        right = {"outer": {"y": None, "x": [1, 2, {"q": 2, "p": 1}]}}
        assert canonical_hash(left) == canonical_hash(right)

    def test_list_order_matters(self):
        assert canonical_hash([1, 2]) != canonical_hash([2, 1])

    def test_integral_floats_match_ints(self):
        # JS clients send 12 where Python computed 12.0
        assert canonical_hash([[12.0, 0.5]]) == canonical_hash([[12, 0.5]])

    def test_compact_sorted_serialization(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_nan_is_rejected(self):
        with pytest.raises(ValueError):
            canonical_hash({"value": math.nan})

    def test_unserializable_is_rejected(self):
        with pytest.raises(TypeError):
            canonical_hash({"value": object()})

    def test_sha256_of_string_and_bytes_agree(self):
        assert sha256_hex("abc") == sha256_hex(b"abc")
        assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestManifestSignature:
    def test_roundtrip_verifies(self):
        manifest = _manifest()
        signature = sign_manifest(manifest, SECRET)
        assert verify_manifest(manifest, signature, SECRET)

    def test_signature_ignores_unsigned_fields(self):
        manifest = _manifest()
        signature = sign_manifest(manifest, SECRET)
        assert verify_manifest(dict(manifest, input_data={"anything": 1}), signature, SECRET)

    @pytest.mark.parametrize("field,value", [
        ("task_id", "task_abc_ffffffffffffffff"),
        ("task_type", "matrix_mult"),
        ("input_hash", "0" * 64),
        ("expires_at", "2030-01-01T00:00:00.000Z"),
    ])
    def test_tampering_is_detected(self, field, value):
        signature = sign_manifest(_manifest(), SECRET)
        assert not verify_manifest(_manifest(**{field: value}), signature, SECRET)

    def test_wrong_secret_fails(self):
        signature = sign_manifest(_manifest(), SECRET)
        assert not verify_manifest(_manifest(), signature, "other-secret")

    def test_malformed_signature_fails(self):
        assert not verify_manifest(_manifest(), "not-hex", SECRET)
        assert not verify_manifest(_manifest(), "", SECRET)

    def test_canary_manifest_without_expiry(self):
        manifest = _manifest(task_id="canary_" + "a" * 32)
        del manifest["expires_at"]
        signature = sign_manifest(manifest, SECRET)
        assert verify_manifest(dict(manifest, expires_at=None), signature, SECRET)


class TestIdentifiers:
    def test_task_ids_are_unique_and_prefixed(self):
        ids = {generate_task_id() for _ in range(200)}
        assert len(ids) == 200
        assert all(task_id.startswith("task_") for task_id in ids)
        assert not any(is_canary_id(task_id) for task_id in ids)

    def test_canary_id_derives_from_input_hash(self):
        input_hash = "ab" * 32
        assert canary_id_for(input_hash) == "canary_" + input_hash[:32]
        assert is_canary_id(canary_id_for(input_hash))

    def test_manifest_timestamp(self):
        assert manifest_timestamp(datetime(2026, 3, 1, 12, 30, 5, 123456)) == "2026-03-01T12:30:05.123Z"
        assert manifest_timestamp(None) is None
