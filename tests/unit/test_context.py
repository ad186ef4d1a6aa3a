"""
Unit tests for request context propagation.
"""

import asyncio
import threading

import pytest

from platform_shared.context import ContextStore, RequestContext, Session, generate_request_id


class TestRequestId:
    """Test cases for request id generation."""

    def test_generated_ids_are_alphanumeric(self):
        request_id = generate_request_id()
        assert len(request_id) == 21
        assert request_id.isalnum()

    def test_generated_ids_are_unique(self):
        assert len({generate_request_id() for _ in range(200)}) == 200


class TestContextStore:
    """Test cases for ContextStore."""

    @pytest.fixture
    def store(self):
        return ContextStore("test_context")

    def test_no_context_outside_scope(self, store):
        assert store.get_context() is None
        assert store.get_request_id() is None
        assert store.get_session() is None

    def test_run_sync_function(self, store):
        context = RequestContext(request_id="req-1")
        result = store.run(context, store.get_request_id)
        assert result == "req-1"
        assert store.get_context() is None

    def test_scope_restores_outer_context(self, store):
        outer = RequestContext(request_id="outer")
        inner = RequestContext(request_id="inner")
        with store.scope(outer):
            with store.scope(inner):
                assert store.get_request_id() == "inner"
            assert store.get_request_id() == "outer"
        assert store.get_context() is None

    def test_scope_restored_after_exception(self, store):
        context = RequestContext(request_id="failing")

        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run(context, boom)
        assert store.get_context() is None

    @pytest.mark.asyncio
    async def test_run_coroutine_keeps_scope_across_awaits(self, store):
        context = RequestContext(request_id="async-req")

        async def handler():
            await asyncio.sleep(0)
            first = store.get_request_id()
            await asyncio.sleep(0.01)
            return first, store.get_request_id()

        assert await store.run(context, handler) == ("async-req", "async-req")
        assert store.get_context() is None

    @pytest.mark.asyncio
    async def test_concurrent_scopes_are_isolated(self, store):
        seen = {}

        async def handler(name):
            for _ in range(5):
                await asyncio.sleep(0)
                seen.setdefault(name, set()).add(store.get_request_id())

        await asyncio.gather(
            store.run(RequestContext(request_id="a"), handler, "a"),
            store.run(RequestContext(request_id="b"), handler, "b"),
        )
        assert seen == {"a": {"a"}, "b": {"b"}}

    @pytest.mark.asyncio
    async def test_child_tasks_share_parent_context(self, store):
        context = RequestContext(request_id="parent")

        async def child():
            await asyncio.sleep(0)
            store.get_context().increment("children")
            return store.get_request_id()

        async def handler():
            return await asyncio.gather(*(asyncio.create_task(child()) for _ in range(3)))

        assert await store.run(context, handler) == ["parent", "parent", "parent"]
        assert context.metrics["children"] == 3

    @pytest.mark.asyncio
    async def test_bind_propagates_to_executor_thread(self, store):
        context = RequestContext(request_id="threaded")
        loop = asyncio.get_running_loop()

        with store.scope(context):
            result = await loop.run_in_executor(None, store.bind(store.get_request_id))

        assert result == "threaded"

    def test_bind_without_active_context(self, store):
        bound = store.bind(store.get_request_id)
        assert bound() is None

    def test_update_context(self, store):
        context = RequestContext(request_id="req")
        session = Session(access_token="access", refresh_token="refresh", user_id="user-1")
        with store.scope(context):
            store.update_context(session=session, unknown_field="ignored")
            assert store.get_session() == session
        assert not hasattr(context, "unknown_field")

    def test_update_context_outside_scope_is_noop(self, store):
        store.update_context(session=None)
        store.set_context_value("request_id", "x")
        assert store.get_context() is None

    def test_set_context_value(self, store):
        context = RequestContext(request_id="before")
        with store.scope(context):
            store.set_context_value("request_id", "after")
        assert context.request_id == "after"


class TestRequestContext:
    """Test cases for merge-safe context mutation."""

    def test_increment_from_many_threads(self):
        context = RequestContext()

        def work():
            for _ in range(1000):
                context.increment("hits")

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert context.metrics["hits"] == 8000

    def test_record_timing_accumulates(self):
        context = RequestContext()
        context.record_timing("db_ms", 1.5)
        context.record_timing("db_ms", 2.5)
        assert context.timings["db_ms"] == 4.0

    def test_record_error_and_snapshot(self):
        context = RequestContext(request_id="req")
        context.record_error("upstream failed", timestamp=10.0)
        snapshot = context.snapshot()
        assert snapshot["request_id"] == "req"
        assert snapshot["has_session"] is False
        assert snapshot["errors"] == [{"message": "upstream failed", "timestamp": 10.0}]
