"""Department and layer identifier validation.

Department and layer names end up as PostgreSQL identifiers and as
arguments of external commands. Only ASCII letters, digits and
underscores are accepted, starting with a letter or underscore and at most
63 characters long (PostgreSQL's identifier limit).
"""

from __future__ import annotations

import re

from geoingest.core import errors
from geoingest.db import models as db_models

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


def validate_identifier(value: str, kind: str = "identifier") -> str:
    """Return ``value`` unchanged if it is a safe identifier.

    Args:
        value: Department or layer name supplied by the caller.
        kind: Label used in the diagnostic message.

    Raises:
        InvalidIdentifier: if the value contains anything outside the
            allow-list or is empty or too long.
    """
    if not isinstance(value, str) or not _IDENTIFIER_RE.fullmatch(value):
        raise errors.InvalidIdentifier(f"Invalid {kind}: {value!r}")
    return value


def qualified_table(department: str, layer_name: str) -> db_models.QualifiedTable:
    """Derive the lower-cased ``department.layer`` table for a layer.

    Raises:
        InvalidIdentifier: if either part fails validation.
    """
    schema = validate_identifier(department, "department").lower()
    table = validate_identifier(layer_name, "layer name").lower()
    return db_models.QualifiedTable(schema, table)
