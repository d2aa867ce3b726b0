"""Share-link schema migrations: discovery, ordering and idempotency lint.

SQL lives next to this module as ``NNN_description.sql`` and is applied
with ``supabase db push``. This module does not execute anything; it is
the validation layer run by the test suite so every migration can be
re-applied safely.

Idempotency contract, checked per statement line:
    1. CREATE TABLE / INDEX / SCHEMA use IF NOT EXISTS.
    2. CREATE FUNCTION uses CREATE OR REPLACE.
    3. CREATE TRIGGER / POLICY are preceded by DROP ... IF EXISTS.
    4. DROP TABLE / INDEX / FUNCTION use IF EXISTS.
    5. ALTER TABLE ADD COLUMN uses IF NOT EXISTS (warning).

Function bodies (``$$ ... $$``) are skipped: statements inside them run
at call time, not at migration time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

# Migration file discovery pattern: NNN_description.sql
_MIGRATION_RE = re.compile(r'^(\d{3})_.*\.sql$')

# Directory containing migration SQL files.
MIGRATIONS_DIR = Path(__file__).parent

# Tables the share service reads and writes.
REQUIRED_TABLES = ('share_links', 'share_access_logs', 'retired_share_tokens')

# RPC functions the Supabase store calls.
REQUIRED_FUNCTIONS = (
    'grant_share_access',
    'delete_share_link',
    'purge_expired_share_links',
)


@dataclass(frozen=True, slots=True)
class MigrationFile:
    """A discovered migration file with its sequence number."""

    sequence: int
    filename: str
    path: Path


@dataclass
class ValidationResult:
    """Result of idempotency validation for a single migration file."""

    path: Path
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return len(self.errors) == 0


# (pattern, message, severity); a line matching ``pattern`` is a violation.
_UNSAFE_PATTERNS: list[tuple[re.Pattern[str], str, str]] = [
    (
        re.compile(r'^create\s+table\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE TABLE without IF NOT EXISTS',
        'error',
    ),
    (
        re.compile(r'^create\s+(unique\s+)?index\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE INDEX without IF NOT EXISTS',
        'error',
    ),
    (
        re.compile(r'^create\s+schema\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'CREATE SCHEMA without IF NOT EXISTS',
        'error',
    ),
    (
        re.compile(r'^create\s+function\s+', re.IGNORECASE),
        'CREATE FUNCTION without OR REPLACE',
        'error',
    ),
    (
        re.compile(r'^drop\s+(table|index|function)\s+(?!if\s+exists)', re.IGNORECASE),
        'DROP without IF EXISTS',
        'error',
    ),
    (
        re.compile(r'^(?:alter\s+table\s+\S+\s+)?add\s+column\s+(?!if\s+not\s+exists)', re.IGNORECASE),
        'ADD COLUMN without IF NOT EXISTS',
        'warning',
    ),
]

_CREATE_POLICY_RE = re.compile(r'^create\s+policy\s+(\S+)', re.IGNORECASE)
_DROP_POLICY_RE = re.compile(r'^drop\s+policy\s+if\s+exists\s+(\S+)', re.IGNORECASE)
_CREATE_TRIGGER_RE = re.compile(r'^create\s+(?:or\s+replace\s+)?trigger\s+(\S+)', re.IGNORECASE)
_DROP_TRIGGER_RE = re.compile(r'^drop\s+trigger\s+if\s+exists\s+(\S+)', re.IGNORECASE)

_CREATE_TABLE_NAME_RE = re.compile(
    r'^create\s+table\s+if\s+not\s+exists\s+(?:\w+\.)?(\w+)', re.IGNORECASE,
)
_CREATE_FUNCTION_NAME_RE = re.compile(
    r'^create\s+or\s+replace\s+function\s+(?:\w+\.)?(\w+)', re.IGNORECASE,
)


def discover_migrations(
    directory: Path | None = None,
) -> list[MigrationFile]:
    """Discover and return migration files sorted by sequence number.

    Raises:
        ValueError: If duplicate sequence numbers are found.
    """
    d = directory or MIGRATIONS_DIR
    results: list[MigrationFile] = []
    seen_seqs: dict[int, str] = {}

    for p in sorted(d.iterdir()):
        if not p.is_file():
            continue
        m = _MIGRATION_RE.match(p.name)
        if not m:
            continue
        seq = int(m.group(1))
        if seq in seen_seqs:
            raise ValueError(
                f'Duplicate migration sequence {seq:03d}: '
                f'{seen_seqs[seq]} and {p.name}'
            )
        seen_seqs[seq] = p.name
        results.append(MigrationFile(sequence=seq, filename=p.name, path=p))

    results.sort(key=lambda mf: mf.sequence)
    return results


def _statement_lines(text: str):
    """Yield ``(line_number, stripped_line)`` outside comments and $$ bodies."""
    in_body = False
    for i, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('--'):
            continue
        toggles = stripped.count('$$')
        if in_body:
            if toggles % 2:
                in_body = False
            continue
        yield i, stripped
        if toggles % 2:
            in_body = True


def validate_idempotency(sql_path: Path) -> ValidationResult:
    """Check a migration SQL file for idempotency contract violations."""
    result = ValidationResult(path=sql_path)

    dropped_policies: set[str] = set()
    dropped_triggers: set[str] = set()

    for i, stripped in _statement_lines(sql_path.read_text()):
        dp = _DROP_POLICY_RE.match(stripped)
        if dp:
            dropped_policies.add(dp.group(1).lower())
            continue
        cp = _CREATE_POLICY_RE.match(stripped)
        if cp:
            if cp.group(1).lower() not in dropped_policies:
                result.errors.append(
                    f'Line {i}: CREATE POLICY {cp.group(1)} without '
                    f'preceding DROP POLICY IF EXISTS'
                )
            continue

        dt = _DROP_TRIGGER_RE.match(stripped)
        if dt:
            dropped_triggers.add(dt.group(1).lower())
            continue
        ct = _CREATE_TRIGGER_RE.match(stripped)
        if ct:
            if ct.group(1).lower() not in dropped_triggers:
                result.errors.append(
                    f'Line {i}: CREATE TRIGGER {ct.group(1)} without '
                    f'preceding DROP TRIGGER IF EXISTS'
                )
            continue

        for pattern, msg, severity in _UNSAFE_PATTERNS:
            if pattern.search(stripped):
                target = result.errors if severity == 'error' else result.warnings
                target.append(f'Line {i}: {msg}')

    return result


def validate_all(directory: Path | None = None) -> dict[str, ValidationResult]:
    """Validate all discovered migrations for idempotency."""
    return {
        mf.filename: validate_idempotency(mf.path)
        for mf in discover_migrations(directory)
    }


def check_sequence_gaps(
    migrations: Sequence[MigrationFile],
) -> list[str]:
    """Return warning messages for gaps in migration sequence numbers."""
    warnings: list[str] = []
    for i in range(1, len(migrations)):
        prev = migrations[i - 1].sequence
        curr = migrations[i].sequence
        if curr != prev + 1:
            warnings.append(
                f'Gap in sequence: {prev:03d} -> {curr:03d} '
                f'(expected {prev + 1:03d})'
            )
    return warnings


def declared_objects(
    directory: Path | None = None,
) -> tuple[set[str], set[str]]:
    """Return ``(tables, functions)`` created across all migrations."""
    tables: set[str] = set()
    functions: set[str] = set()
    for mf in discover_migrations(directory):
        for _, stripped in _statement_lines(mf.path.read_text()):
            t = _CREATE_TABLE_NAME_RE.match(stripped)
            if t:
                tables.add(t.group(1).lower())
            f = _CREATE_FUNCTION_NAME_RE.match(stripped)
            if f:
                functions.add(f.group(1).lower())
    return tables, functions


def missing_objects(directory: Path | None = None) -> list[str]:
    """Tables and RPC functions the service needs but no migration creates."""
    tables, functions = declared_objects(directory)
    missing = [f'table {t}' for t in REQUIRED_TABLES if t not in tables]
    missing += [f'function {f}' for f in REQUIRED_FUNCTIONS if f not in functions]
    return missing
