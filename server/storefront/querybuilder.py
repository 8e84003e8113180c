"""Build minimal UPDATE statements from typed patch models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


@dataclass
class UpdateStatement:
    sql: str
    params: List[Any]
    fields: List[str] = field(default_factory=list)


class UpdateBuilder:
    """
    Emit `UPDATE <table> SET ... WHERE <key> = $n` for the fields of a patch
    that were explicitly set.

    Only whitelisted patch fields become columns; `columns` maps a patch
    field to its column name when they differ. When `touch` names a column
    it is set to CURRENT_TIMESTAMP on every non-empty update.
    """

    def __init__(
        self,
        table: str,
        allowed: List[str],
        columns: Optional[Dict[str, str]] = None,
        touch: Optional[str] = None,
    ):
        self.table = table
        self.allowed = list(allowed)
        self.columns = columns or {}
        self.touch = touch

    def changes(self, patch: BaseModel) -> Dict[str, Any]:
        """Explicitly-set fields of `patch`, in whitelist order."""
        provided = patch.model_dump(exclude_unset=True)
        return {
            name: provided[name].value if isinstance(provided[name], Enum) else provided[name]
            for name in self.allowed
            if name in provided
        }

    def build(self, patch: BaseModel, key: Any, key_column: str = "id") -> Optional[UpdateStatement]:
        """Return the statement, or None when the patch sets nothing."""
        changes = self.changes(patch)
        if not changes:
            return None

        assignments = []
        params: List[Any] = []
        for idx, (name, value) in enumerate(changes.items(), start=1):
            assignments.append(f"{self.columns.get(name, name)} = ${idx}")
            params.append(value)
        if self.touch:
            assignments.append(f"{self.touch} = CURRENT_TIMESTAMP")

        params.append(key)
        sql = (
            f"UPDATE {self.table} SET {', '.join(assignments)} "
            f"WHERE {key_column} = ${len(params)}"
        )
        return UpdateStatement(sql=sql, params=params, fields=list(changes))
