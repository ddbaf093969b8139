"""Schema migrations for the guild control tables and RPCs.

Files are named ``NNN_description.sql`` and applied in sequence order with
``supabase db push``. This module does not execute anything; it discovers
the files and lints them so that applying a file twice is harmless:

  - CREATE TABLE / INDEX / SCHEMA carry IF NOT EXISTS.
  - Functions are written as CREATE OR REPLACE FUNCTION.
  - CREATE TRIGGER / POLICY follow a DROP ... IF EXISTS of the same name.
  - ADD COLUMN carries IF NOT EXISTS.
  - DROP TABLE / INDEX carry IF EXISTS.

``defined_functions`` lets callers check that every RPC the repositories
invoke is actually shipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

MIGRATIONS_DIR = Path(__file__).parent

_FILENAME_RE = re.compile(r'^(\d{3})_[a-z0-9_]+\.sql$')

_FUNCTION_RE = re.compile(
    r'^create\s+(or\s+replace\s+)?function\s+(?:public\.)?([a-z_][a-z0-9_]*)\s*\(',
    re.IGNORECASE,
)
_TRIGGER_RE = re.compile(r'^create\s+trigger\s+(\S+)', re.IGNORECASE)
_DROP_TRIGGER_RE = re.compile(r'^drop\s+trigger\s+if\s+exists\s+(\S+)', re.IGNORECASE)
_POLICY_RE = re.compile(r'^create\s+policy\s+("[^"]+"|\S+)', re.IGNORECASE)
_DROP_POLICY_RE = re.compile(
    r'^drop\s+policy\s+if\s+exists\s+("[^"]+"|\S+)', re.IGNORECASE,
)

# (pattern, message, is_error) applied to every statement line.
_LINE_RULES: tuple[tuple[re.Pattern[str], str, bool], ...] = (
    (
        re.compile(r'^create\s+table\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE TABLE without IF NOT EXISTS',
        True,
    ),
    (
        re.compile(r'^create\s+(unique\s+)?index\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE INDEX without IF NOT EXISTS',
        True,
    ),
    (
        re.compile(r'^create\s+schema\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE SCHEMA without IF NOT EXISTS',
        True,
    ),
    (
        re.compile(r'^drop\s+(table|index)\s+(?!if\s+exists)', re.IGNORECASE),
        'DROP without IF EXISTS',
        True,
    ),
    (
        re.compile(r'\badd\s+column\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'ADD COLUMN without IF NOT EXISTS',
        False,
    ),
)


@dataclass(frozen=True, slots=True)
class MigrationFile:
    sequence: int
    filename: str
    path: Path


@dataclass
class ValidationResult:
    """Lint outcome for one migration file."""

    path: Path
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def discover_migrations(directory: Path | None = None) -> list[MigrationFile]:
    """Return the migration files in ``directory`` in sequence order.

    Raises:
        ValueError: If two files share a sequence number.
    """
    found: dict[int, MigrationFile] = {}
    for path in sorted((directory or MIGRATIONS_DIR).glob('*.sql')):
        match = _FILENAME_RE.match(path.name)
        if match is None:
            continue
        sequence = int(match.group(1))
        if sequence in found:
            raise ValueError(
                f'Duplicate migration sequence {sequence:03d}: '
                f'{found[sequence].filename} and {path.name}'
            )
        found[sequence] = MigrationFile(sequence=sequence, filename=path.name, path=path)
    return [found[sequence] for sequence in sorted(found)]


def _statement_lines(text: str) -> Iterable[tuple[int, str]]:
    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if stripped and not stripped.startswith('--'):
            yield number, stripped


def validate_idempotency(sql_path: Path) -> ValidationResult:
    result = ValidationResult(path=sql_path)
    dropped_triggers: set[str] = set()
    dropped_policies: set[str] = set()

    for number, line in _statement_lines(sql_path.read_text()):
        function = _FUNCTION_RE.match(line)
        if function is not None:
            if function.group(1) is None:
                result.errors.append(f'Line {number}: CREATE FUNCTION without OR REPLACE')
            continue

        dropped = _DROP_TRIGGER_RE.match(line)
        if dropped is not None:
            dropped_triggers.add(dropped.group(1).lower())
            continue
        trigger = _TRIGGER_RE.match(line)
        if trigger is not None:
            if trigger.group(1).lower() not in dropped_triggers:
                result.errors.append(
                    f'Line {number}: CREATE TRIGGER {trigger.group(1)} without '
                    f'preceding DROP TRIGGER IF EXISTS'
                )
            continue

        dropped = _DROP_POLICY_RE.match(line)
        if dropped is not None:
            dropped_policies.add(dropped.group(1).lower())
            continue
        policy = _POLICY_RE.match(line)
        if policy is not None:
            if policy.group(1).lower() not in dropped_policies:
                result.errors.append(
                    f'Line {number}: CREATE POLICY {policy.group(1)} without '
                    f'preceding DROP POLICY IF EXISTS'
                )
            continue

        for pattern, message, is_error in _LINE_RULES:
            if pattern.search(line):
                (result.errors if is_error else result.warnings).append(
                    f'Line {number}: {message}'
                )

    return result


def validate_all(directory: Path | None = None) -> dict[str, ValidationResult]:
    return {
        migration.filename: validate_idempotency(migration.path)
        for migration in discover_migrations(directory)
    }


def defined_functions(directory: Path | None = None) -> set[str]:
    """Names of every function created across the migration files."""
    names: set[str] = set()
    for migration in discover_migrations(directory):
        for _, line in _statement_lines(migration.path.read_text()):
            match = _FUNCTION_RE.match(line)
            if match is not None:
                names.add(match.group(2).lower())
    return names
