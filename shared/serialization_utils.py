"""
Serialization utilities for the subscription ledger.

JSON encoding for snapshots and events: dataclasses, enums, HexBytes and
integers beyond the IEEE 754 safe range (uint256 amounts) as strings.

Usage:
    from shared.serialization_utils import LedgerJSONEncoder, to_json
    json.dumps(snapshot, cls=LedgerJSONEncoder)
"""

import dataclasses
import json
from enum import Enum
from json import JSONEncoder
from typing import Any

from hexbytes import HexBytes


class LedgerJSONEncoder(JSONEncoder):
    """
    JSON encoder for ledger types.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    _MAX_SAFE_INTEGER = 2**53 - 1

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (HexBytes, bytes)):
            return "0x" + bytes(obj).hex()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return self._convert(_dataclass_dict(obj))
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Convert large integers to strings before JSON serialization."""
        return super().encode(self._convert(obj))

    def iterencode(self, obj: Any, _one_shot: bool = False):
        return super().iterencode(self._convert(obj), _one_shot)

    def _convert(self, obj: Any) -> Any:
        """Recursively convert unsafe integers to strings and unpack dataclasses."""
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            obj = _dataclass_dict(obj)
        if isinstance(obj, dict):
            return {str(k): self._convert(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._convert(item) for item in obj]
        if isinstance(obj, bool):
            return obj
        if isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def _dataclass_dict(obj: Any) -> dict[str, Any]:
    """Shallow field dict plus the event kind for DomainEvent variants."""
    data = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    kind = getattr(type(obj), "kind", None)
    if isinstance(kind, Enum):
        data = {"kind": kind.value, **data}
    return data


def to_json(obj: Any, indent: int | None = None) -> str:
    """Serialize any ledger object to a JSON string."""
    return json.dumps(obj, cls=LedgerJSONEncoder, indent=indent)
