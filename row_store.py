"""
Keyed row store backed by a pandas DataFrame and persisted as CSV.

Both the Asset Registry and the Change Request Store sit on top of this:
one row per record, every cell kept as a string so that a saved sheet
reloads to exactly the same values. Record classes own the conversion
to and from their typed fields.
"""

import os
import logging
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger("RowStore")


class RowStore:
    """get / put / query over rows keyed by one column."""

    def __init__(self, columns: List[str], key: str, path: Optional[str] = None):
        if key not in columns:
            raise ValueError(f"Key column '{key}' is not one of the store columns")
        self.columns = list(columns)
        self.key = key
        self.path = path
        self._df = self._load()

    def _load(self) -> pd.DataFrame:
        if self.path and os.path.exists(self.path):
            df = pd.read_csv(self.path, dtype=str).replace({np.nan: ""})
            for col in self.columns:
                if col not in df.columns:
                    df[col] = ""
            df = df[self.columns].astype(object)
            df.index = df[self.key]
            logger.info(f"Loaded {len(df)} rows from {self.path}")
            return df
        df = pd.DataFrame(columns=self.columns, dtype=object)
        df.index.name = None
        return df

    @staticmethod
    def _cell(value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    def __len__(self) -> int:
        return len(self._df)

    def __contains__(self, key: str) -> bool:
        return str(key) in self._df.index

    def get(self, key: str) -> Optional[Dict[str, str]]:
        key = str(key)
        if key not in self._df.index:
            return None
        return self._df.loc[key].to_dict()

    def put(self, row: Dict[str, Any]):
        key = self._cell(row.get(self.key))
        if not key:
            raise ValueError(f"Row is missing its key column '{self.key}'")
        values = [self._cell(row.get(col)) for col in self.columns]
        self._df.loc[key] = pd.Series(values, index=self.columns, dtype=object)

    def put_many(self, rows: Iterable[Dict[str, Any]]):
        for row in rows:
            self.put(row)

    def query(self, **filters: Any) -> List[Dict[str, str]]:
        """Rows whose columns equal every given value, in insertion order."""
        if self._df.empty:
            return []
        mask = pd.Series(True, index=self._df.index)
        for col, value in filters.items():
            if col not in self._df.columns:
                raise KeyError(f"Unknown column '{col}'")
            if isinstance(value, (set, frozenset, list, tuple)):
                mask &= self._df[col].isin([self._cell(v) for v in value])
            else:
                mask &= self._df[col] == self._cell(value)
        return self._df[mask].to_dict(orient="records")

    def all(self) -> List[Dict[str, str]]:
        return self._df.to_dict(orient="records")

    def to_frame(self) -> pd.DataFrame:
        return self._df.reset_index(drop=True).copy()

    def save(self):
        """Write the sheet back to disk. In-memory stores are a no-op."""
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._df.to_csv(self.path, index=False)
        logger.debug(f"Saved {len(self._df)} rows to {self.path}")
