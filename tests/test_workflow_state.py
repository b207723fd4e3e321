"""Tests for WorkflowStateService — namespaced JSON documents with atomic replace."""

import json
import os

import pytest

from rpoly.core.workflow_state import WorkflowStateService
from rpoly.errors import PersistenceError


@pytest.fixture
def state(tmp_path):
    return WorkflowStateService("updown", data_dir=tmp_path)


class TestWorkflowState:
    @pytest.mark.asyncio
    async def test_missing_key_is_none(self, state):
        assert await state.get("memory") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, state, tmp_path):
        await state.put("memory", {"total_trades": 3, "hourly": {"08": {"wins": 2}}})

        assert await state.get("memory") == {"total_trades": 3, "hourly": {"08": {"wins": 2}}}
        assert (tmp_path / "updown" / "memory.json").exists()

    @pytest.mark.asyncio
    async def test_put_replaces_whole_document(self, state):
        await state.put("trade_history", {"trades": [1, 2]})
        await state.put("trade_history", {"trades": [1, 2, 3]})
        assert await state.get("trade_history") == {"trades": [1, 2, 3]}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, state):
        await state.put("memory", {"a": 1})
        assert os.listdir(state.root) == ["memory.json"]

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, tmp_path):
        a = WorkflowStateService("updown", data_dir=tmp_path)
        b = WorkflowStateService("paper", data_dir=tmp_path)
        await a.put("memory", {"owner": "a"})
        assert await b.get("memory") is None

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self, state):
        state.root.mkdir(parents=True)
        (state.root / "memory.json").write_text("{\"total_trades\": ")

        with pytest.raises(PersistenceError) as exc:
            await state.get("memory")
        assert exc.value.key == "memory"

    @pytest.mark.asyncio
    async def test_empty_file_is_none(self, state):
        state.root.mkdir(parents=True)
        (state.root / "memory.json").write_text("  \n")
        assert await state.get("memory") is None

    @pytest.mark.asyncio
    async def test_unserializable_data_keeps_previous(self, state):
        await state.put("memory", {"ok": True})

        with pytest.raises(PersistenceError):
            await state.put("memory", {"bad": object()})

        assert json.loads((state.root / "memory.json").read_text()) == {"ok": True}
        assert os.listdir(state.root) == ["memory.json"]

    @pytest.mark.asyncio
    async def test_delete(self, state):
        await state.put("memory", {"a": 1})
        await state.delete("memory")
        await state.delete("memory")
        assert await state.get("memory") is None
