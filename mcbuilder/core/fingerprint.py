# mcbuilder/core/fingerprint.py
"""
Build fingerprint: a sha256 over the canonical form of a fully resolved
spec.  It is the rebuild-skip key stored in `status.lastFingerprint`.

Canonical form:
• mappings are emitted with sorted keys
• generated datapacks count by what was asked of the generator, not by
  the one-off download link it answered with
• None, "" and empty containers are dropped, so "not set" and "set to
  the empty default" hash the same
• list order is kept (mod and datapack order matters)
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from mcbuilder.core.models import ResolvedSpec

# Bump when the canonical form changes; forces one rebuild everywhere.
FINGERPRINT_VERSION = 1


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (dict, list)) and not value)


def canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for key in sorted(value):
            item = canonicalize(value[key])
            if not _is_empty(item):
                out[key] = item
        return out
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def canonical_json(resolved: ResolvedSpec) -> str:
    data = canonicalize(resolved.fingerprint_data())
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(resolved: ResolvedSpec) -> str:
    payload = f"v{FINGERPRINT_VERSION}\n{canonical_json(resolved)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
