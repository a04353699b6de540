from __future__ import annotations

import hashlib
import json
from typing import Any


def stable_stringify(value: Any) -> str:
    """Serialize ``value`` with object keys sorted at every depth.

    Arrays keep their element order; only mapping keys are canonicalized.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def stable_hash(value: Any) -> str:
    return hashlib.sha256(stable_stringify(value).encode("utf-8")).hexdigest()
