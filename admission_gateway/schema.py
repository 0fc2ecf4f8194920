"""JSON Schema validation for configuration snapshots.

Schemas live in: admission_gateway/schemas/

Design notes:
- Uses jsonschema Draft 2020-12.
- Fails closed: schema load errors are treated as validation failures.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Tuple

import jsonschema

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SNAPSHOT_SCHEMA = "config_snapshot.schema.json"


@dataclass
class SchemaMessage:
    ok: bool
    code: str
    detail: str


@lru_cache(maxsize=None)
def _get_validator(schema_file: str) -> "jsonschema.Draft202012Validator":
    with (SCHEMAS_DIR / schema_file).open("r", encoding="utf-8") as f:
        schema = json.load(f)
    return jsonschema.Draft202012Validator(schema)


def validate_snapshot(obj: Any) -> Tuple[bool, List[SchemaMessage]]:
    msgs: List[SchemaMessage] = []
    try:
        validator = _get_validator(SNAPSHOT_SCHEMA)
        errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
        if errors:
            for e in errors[:50]:
                loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
                msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{loc}: {e.message}"))
            if len(errors) > 50:
                msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{len(errors) - 50} more errors..."))
            return False, msgs
        msgs.append(SchemaMessage(True, "SCHEMA_OK", "config_snapshot: valid"))
        return True, msgs
    except FileNotFoundError as e:
        return False, [SchemaMessage(False, "SCHEMA_MISSING", str(e))]
    except Exception as e:
        return False, [SchemaMessage(False, "SCHEMA_VALIDATE_EXCEPTION", str(e))]
