"""
Declarative table catalogue.

Loads ``tables.yaml`` (or the file named by ``TALLY_TABLES_FILE``) into
validated TableSpec models plus the logical-to-database table mapping.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union
import yaml
from loguru import logger
from pydantic import ValidationError

from .models import Category, TableSpec

TABLES_FILE = Path(__file__).parent / "tables.yaml"
DEFAULT_PRIORITY = 999


class TableConfigError(Exception):
    """Raised when the table catalogue is invalid or a table is unknown."""
    pass


@dataclass(frozen=True)
class TableMapping:
    table: str
    priority: int = DEFAULT_PRIORITY


@dataclass
class TableConfig:
    master: list[TableSpec] = field(default_factory=list)
    transaction: list[TableSpec] = field(default_factory=list)
    mapping: dict[str, TableMapping] = field(default_factory=dict)

    def all(self) -> list[TableSpec]:
        return [*self.master, *self.transaction]

    def get(self, name: str) -> TableSpec:
        for table in self.all():
            if table.name == name:
                return table
        raise TableConfigError(f"Unknown table: {name}")

    def target_table(self, name: str) -> str:
        mapping = self.mapping.get(name)
        if mapping is None:
            raise TableConfigError(f"No mapping found for table {name}")
        return mapping.table

    def priority(self, name: str) -> int:
        mapping = self.mapping.get(name)
        return mapping.priority if mapping else DEFAULT_PRIORITY

    def ordered(self, names: Optional[Iterable[str]] = None) -> list[TableSpec]:
        """
        Tables in sync order: masters before transactions, each by priority.

        Raises:
            TableConfigError: If a requested name is not configured
        """
        selected = self.all() if names is None else [self.get(n) for n in dict.fromkeys(names)]
        return sorted(
            selected,
            key=lambda t: (t.category != Category.MASTER, self.priority(t.name), t.name),
        )


def _specs(entries: Optional[list], category: Category) -> list[TableSpec]:
    specs = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            raise TableConfigError(f"Invalid {category.value} table entry: {entry!r}")
        specs.append(TableSpec.model_validate({**entry, "category": category}))
    return specs


def load_table_config(path: Optional[Union[str, Path]] = None) -> TableConfig:
    """
    Load and validate the table catalogue.

    Args:
        path: YAML file (defaults to the bundled tables.yaml)

    Raises:
        TableConfigError: If the file is missing, malformed or inconsistent
    """
    path = Path(path) if path else TABLES_FILE
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise TableConfigError(f"Cannot read table config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise TableConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise TableConfigError(f"Table config {path} must be a mapping")

    try:
        master = _specs(raw.get("master"), Category.MASTER)
        transaction = _specs(raw.get("transaction"), Category.TRANSACTION)
    except ValidationError as e:
        raise TableConfigError(f"Invalid table definition in {path}: {e}") from e

    names = [t.name for t in master + transaction]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise TableConfigError(f"Duplicate table names: {duplicates}")

    mapping: dict[str, TableMapping] = {}
    for name, entry in (raw.get("database_mapping") or {}).items():
        if isinstance(entry, str):
            entry = {"table": entry}
        if not isinstance(entry, dict) or not entry.get("table"):
            raise TableConfigError(f"Invalid database mapping for {name}: {entry!r}")
        mapping[name] = TableMapping(
            table=str(entry["table"]),
            priority=int(entry.get("priority", DEFAULT_PRIORITY)),
        )

    unmapped = [n for n in names if n not in mapping]
    if unmapped:
        logger.warning(f"Tables without a database mapping: {unmapped}")
    stray = [n for n in mapping if n not in names]
    if stray:
        logger.warning(f"Database mapping for unknown tables ignored: {stray}")

    for table in master + transaction:
        if table.depends_on and table.depends_on not in names:
            raise TableConfigError(f"{table.name} depends on unknown table {table.depends_on}")

    logger.debug(f"Loaded {len(master)} master and {len(transaction)} transaction tables from {path}")
    return TableConfig(master=master, transaction=transaction, mapping=mapping)
