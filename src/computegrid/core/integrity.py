"""
Integrity Layer - canonical hashing and manifest signing.

Independent nodes return structurally identical results with arbitrary key
ordering, so every comparison in the verifier goes through canonical_hash().
Manifest signatures let a node prove it received exactly the task the server
issued.
"""

import hashlib
import json
import secrets
import time
from datetime import datetime
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

CANARY_PREFIX = "canary_"
TASK_PREFIX = "task_"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _normalize(value: Any) -> Any:
    # JavaScript clients serialize 12.0 as 12
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """
    Serialize a value deterministically.

    Keys are sorted at every depth, separators are compact and NaN/Infinity are
    refused. Raises TypeError/ValueError for values that cannot be serialized.
    """
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_hex(data: Any) -> str:
    """SHA-256 hex digest of bytes, a string, or the canonical JSON of a structure."""
    if isinstance(data, bytes):
        raw = data
    elif isinstance(data, str):
        raw = data.encode("utf-8")
    else:
        raw = canonical_json(data).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def canonical_hash(value: Any) -> str:
    """
    Order-independent hash of a structured result.

    canonical_hash({"a": 1, "b": 2}) == canonical_hash({"b": 2, "a": 1})
    """
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


# =============================================================================
# MANIFEST SIGNING
# =============================================================================

def manifest_projection(
    task_id: str,
    task_type: str,
    input_hash: str,
    expires_at: Optional[str],
) -> dict:
    """The minimal, stable subset of a task covered by its signature."""
    return {
        "task_id": task_id,
        "task_type": task_type,
        "input_hash": input_hash,
        "expires_at": expires_at,
    }


def manifest_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC rendering of a naive UTC datetime, as signed and served."""
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


def _manifest_mac(manifest: Mapping[str, Any], secret: str) -> hmac.HMAC:
    projection = manifest_projection(
        manifest["task_id"],
        manifest["task_type"],
        manifest["input_hash"],
        manifest.get("expires_at"),
    )
    mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(canonical_json(projection).encode("utf-8"))
    return mac


def sign_manifest(manifest: Mapping[str, Any], secret: str) -> str:
    """HMAC-SHA256 over the manifest projection, hex encoded."""
    return _manifest_mac(manifest, secret).finalize().hex()


def verify_manifest(manifest: Mapping[str, Any], signature: str, secret: str) -> bool:
    """Constant-time signature check. Malformed signatures simply fail."""
    try:
        expected = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False
    try:
        _manifest_mac(manifest, secret).verify(expected)
    except InvalidSignature:
        return False
    return True


# =============================================================================
# IDENTIFIERS
# =============================================================================

def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_task_id() -> str:
    """task_<base36 epoch ms>_<16 hex chars>"""
    return f"{TASK_PREFIX}{_base36(int(time.time() * 1000))}_{secrets.token_hex(8)}"


def canary_id_for(input_hash: str) -> str:
    """Canary ids derive from the input so an identical canary maps to one row."""
    return f"{CANARY_PREFIX}{input_hash[:32]}"


def is_canary_id(task_id: str) -> bool:
    return task_id.startswith(CANARY_PREFIX)
