"""Tests for migration discovery and the idempotency lint.

The last class runs the lint over the shipped migrations and checks that
every RPC the Supabase repositories call is defined there.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from guild_control.db.repositories import RPC_FUNCTIONS
from guild_control.migrations import (
    MIGRATIONS_DIR,
    defined_functions,
    discover_migrations,
    validate_all,
    validate_idempotency,
)


def _write_sql(directory: Path, name: str, sql: str) -> Path:
    path = directory / name
    path.write_text(sql)
    return path


class TestDiscovery:

    def test_sorted_by_sequence(self, tmp_path):
        _write_sql(tmp_path, '002_second.sql', '')
        _write_sql(tmp_path, '001_first.sql', '')
        _write_sql(tmp_path, 'notes.sql', '')
        _write_sql(tmp_path, '003_third.txt', '')

        found = discover_migrations(tmp_path)

        assert [m.filename for m in found] == ['001_first.sql', '002_second.sql']
        assert [m.sequence for m in found] == [1, 2]

    def test_duplicate_sequence_rejected(self, tmp_path):
        _write_sql(tmp_path, '001_a.sql', '')
        _write_sql(tmp_path, '001_b.sql', '')

        with pytest.raises(ValueError, match='Duplicate migration sequence 001'):
            discover_migrations(tmp_path)


class TestIdempotencyLint:

    @pytest.mark.parametrize('sql, message', [
        ('create table guilds (id text);', 'CREATE TABLE without IF NOT EXISTS'),
        ('CREATE UNIQUE INDEX idx ON guilds (id);', 'CREATE INDEX without IF NOT EXISTS'),
        ('create schema app;', 'CREATE SCHEMA without IF NOT EXISTS'),
        ('create function f() returns void as $$ $$;', 'CREATE FUNCTION without OR REPLACE'),
        ('drop table guilds;', 'DROP without IF EXISTS'),
    ])
    def test_unsafe_statements_are_errors(self, tmp_path, sql, message):
        result = validate_idempotency(_write_sql(tmp_path, '001_x.sql', sql))

        assert not result.ok
        assert result.errors == [f'Line 1: {message}']

    def test_safe_statements_pass(self, tmp_path):
        sql = '\n'.join([
            '-- create table guilds (comments are ignored)',
            'create table if not exists guilds (id text);',
            'create index if not exists guilds_idx on guilds (id);',
            'create or replace function f() returns void as $$ $$;',
            'drop table if exists old_guilds;',
            'drop trigger if exists touch on guilds;',
            'create trigger touch before update on guilds for each row execute function f();',
            'drop policy if exists "owners read" on guilds;',
            'create policy "owners read" on guilds for select using (true);',
        ])

        result = validate_idempotency(_write_sql(tmp_path, '001_x.sql', sql))

        assert result.ok
        assert result.warnings == []

    def test_trigger_and_policy_need_preceding_drop(self, tmp_path):
        sql = '\n'.join([
            'create trigger touch before update on guilds for each row execute function f();',
            'create policy "owners read" on guilds for select using (true);',
        ])

        result = validate_idempotency(_write_sql(tmp_path, '001_x.sql', sql))

        assert len(result.errors) == 2
        assert 'DROP TRIGGER IF EXISTS' in result.errors[0]
        assert 'DROP POLICY IF EXISTS' in result.errors[1]

    def test_add_column_without_guard_is_a_warning(self, tmp_path):
        sql = 'alter table guilds add column tier text;'

        result = validate_idempotency(_write_sql(tmp_path, '001_x.sql', sql))

        assert result.ok
        assert result.warnings == ['Line 1: ADD COLUMN without IF NOT EXISTS']

    def test_defined_functions_collects_names(self, tmp_path):
        _write_sql(tmp_path, '001_a.sql', 'create or replace function public.one()\nreturns void')
        _write_sql(tmp_path, '002_b.sql', 'CREATE OR REPLACE FUNCTION two(delta integer)')

        assert defined_functions(tmp_path) == {'one', 'two'}


class TestShippedMigrations:

    def test_shipped_migrations_are_idempotent(self):
        results = validate_all()

        assert results, 'no migrations discovered'
        for filename, result in results.items():
            assert result.ok, f'{filename}: {result.errors}'

    def test_every_repository_rpc_is_defined(self):
        assert set(RPC_FUNCTIONS) <= defined_functions()

    def test_slot_functions_keep_counter_in_bounds(self):
        sql = ' '.join((MIGRATIONS_DIR / '001_guild_control.sql').read_text().lower().split())

        assert 'and used_slots < max_slots' in sql
        assert 'greatest(0, used_slots + delta)' in sql

    def test_commit_writes_guild_and_deployment(self):
        sql = (MIGRATIONS_DIR / '001_guild_control.sql').read_text().lower()
        body = sql.split('function public.commit_guild_provisioned', 1)[1]

        assert 'update public.guilds' in body
        assert 'insert into public.guild_deployments' in body
