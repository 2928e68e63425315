"""
Tabular views of traces on top of the tabulate package.
"""

from __future__ import annotations
from collections import OrderedDict
import json

import tabulate

from typing import (
    Any,
    List,
    Tuple,
)


class Tabular:
    """Rows sharing the same columns that you can format using tabulatex."""

    def __init__(self):
        self._columns: List[str] = []
        self._rows: List[List[Any]] = []

    def columns(self) -> List[str]:
        return self._columns

    def rows(self) -> List[List[Any]]:
        return self._rows

    def appendrow(self, pairs: List[Tuple[str, Any]]):
        """Appends a row built from (column, value) pairs. Raises TypeError
        if the columns differ from the ones of the previous rows."""
        columns = [key for key, _ in pairs]
        if not self._columns:
            self._columns = columns
        elif self._columns != columns:
            raise TypeError("incompatible columns")
        self._rows.append([value for _, value in pairs])

    def __len__(self) -> int:
        return len(self._rows)

    def tabulatex(self, format: str = "grid") -> str:
        """Formats the rows. With format "json" we emit a list containing
        an object per row, otherwise we pass format through to tabulate."""
        if format == "json":
            out = [OrderedDict(zip(self._columns, row)) for row in self._rows]
            return json.dumps(out)
        return tabulate.tabulate(self._rows, headers=self._columns, tablefmt=format)
