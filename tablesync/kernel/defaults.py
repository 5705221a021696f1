"""
tablesync Kernel — Create/Update Payload Preparation

Fills schema default values into create payloads and stamps the
created/updated timestamp fields. Caller-supplied values always win over
schema defaults; timestamps are always set by the engine.
"""

from __future__ import annotations

import re
import secrets
import string
import uuid
from typing import Any

from tablesync.kernel.types import Row, TableConfig, now_iso

_BASE36 = string.digits + string.ascii_lowercase
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_QUOTED_RE = re.compile(r"""^["'](.*)["']$""")


def new_cuid() -> str:
    """A short collision-resistant id: 'c' followed by 13 base-36 characters."""
    return "c" + "".join(secrets.choice(_BASE36) for _ in range(13))


def resolve_default(expression: str, now: str) -> Any:
    """
    Turn a schema default expression into a concrete value.

      now()      -> `now`
      uuid()     -> random UUID4 string
      cuid()     -> new_cuid()
      true/false -> bool
      42, 1.5    -> number
      "text"     -> text (quotes stripped)
    """
    expr = expression.strip()
    lowered = expr.lower()
    if "now" in lowered:
        return now
    if "uuid" in lowered:
        return str(uuid.uuid4())
    if "cuid" in lowered:
        return new_cuid()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _NUMBER_RE.match(expr):
        return float(expr) if "." in expr else int(expr)
    match = _QUOTED_RE.match(expr)
    return match.group(1) if match else expr


def prepare_create(config: TableConfig, data: Row, now: str | None = None) -> Row:
    """Build the row sent to the gateway for a create."""
    now = now or now_iso()
    defaults = {
        name: resolve_default(expr, now)
        for name, expr in config.default_values.items()
        if name not in data
    }
    row = {**defaults, **data}
    if config.has_created_at:
        row[config.created_at_field] = now
    if config.has_updated_at:
        row[config.updated_at_field] = now
    return row


def prepare_update(config: TableConfig, data: Row, now: str | None = None) -> Row:
    """Build the field set sent to the gateway for an update. No defaults apply."""
    fields = dict(data)
    if config.has_updated_at:
        fields[config.updated_at_field] = now or now_iso()
    return fields
