"""
Integration tests for the entire lumeflow framework.

This module tests end-to-end functionality across all layers: jobs driving
workflows, the reliability primitives in real time, and persistence.
"""

import asyncio
import time

import pytest

from lumeflow import (
    BackendType,
    BlockBase,
    JobKind,
    JobStatus,
    ServiceBlock,
    Settings,
    WorkflowStatus,
    create,
    load_workflow_file,
)
from lumeflow.domain.exception import CircuitOpenError, JobConflictError
from lumeflow.domain.value_object import CircuitState
from lumeflow.reliability import Cache, CircuitBreaker, RateLimiter


class ProcessBlock(BlockBase):
    """Tags its input after a short delay."""

    block_type = "test.process"

    async def execute(self, config, input, context):
        await asyncio.sleep(0.05)
        return {**input, "processed": True}


class SyncTagBlock(BlockBase):
    block_type = "test.syncTag"

    def execute(self, config, input, context):
        time.sleep(0.01)
        return {"tag": config.get("tag"), "input": input}


class FlakyServiceBlock(ServiceBlock):
    """Fails its first call, then answers."""

    block_type = "test.flakyService"

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def call_service(self, config, input, context):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("ECONNRESET")
        return {"calls": self.calls}


LINEAR = {
    "workflowId": "wf-linear",
    "name": "Linear",
    "nodes": [
        {"id": "input", "type": "transform.passThrough"},
        {"id": "process", "type": "test.process"},
        {"id": "output", "type": "output.logger", "config": {"format": "json"}},
    ],
    "edges": [{"source": "input", "target": "process"}, {"source": "process", "target": "output"}],
}

DIAMOND = {
    "workflowId": "wf-diamond",
    "nodes": [
        {"id": "root", "type": "input.static", "config": {"data": 1}},
        {"id": "left", "type": "test.syncTag", "config": {"tag": "L"}},
        {"id": "right", "type": "test.syncTag", "config": {"tag": "R"}},
        {"id": "join", "type": "transform.passThrough"},
    ],
    "edges": [
        {"source": "root", "target": "left"},
        {"source": "root", "target": "right"},
        {"source": "left", "target": "join", "targetPort": "l"},
        {"source": "right", "target": "join", "targetPort": "r"},
    ],
    "globals": {"maxParallelNodes": 2},
}


def make_client(**kwargs):
    kwargs.setdefault("secrets", {})
    kwargs.setdefault("blocks", [ProcessBlock, SyncTagBlock])
    return create(settings=Settings(_env_file=None), **kwargs)


class TestJobScenarios:
    """Integration test cases for workflow jobs."""

    def setup_method(self):
        """Set up a client."""
        self.client = make_client()

    @pytest.fixture(autouse=True)
    async def close_client(self):
        """Close the client after each test."""
        yield
        await self.client.close()

    async def test_linear_workflow_job(self):
        """Test a three node workflow run as a job completes with a full timeline."""
        job = self.client.create_job("user-1", JobKind.WORKFLOW, {"workflow": LINEAR, "input": {"id": 7}})

        final = await self.client.start_job(job.id)

        assert final.status is JobStatus.COMPLETED
        assert final.progress == 100
        assert final.completed_at is not None
        assert final.result.data["output"] == {"output": {"id": 7, "processed": True}}
        events = [event.event for event in final.timeline]
        assert events.index("JOB_CREATED") < events.index("JOB_STARTED") < events.index("JOB_COMPLETED")
        assert events.count("NODE_COMPLETED") == 3

    async def test_unknown_block_type_fails_job(self):
        """Test a workflow naming an unregistered block fails its job descriptively."""
        document = {"workflowId": "wf-missing", "nodes": [{"id": "x", "type": "nonexistent.block"}]}
        job = self.client.create_job("user-1", JobKind.WORKFLOW, {"workflow": document, "input": None})

        final = await self.client.start_job(job.id)

        assert final.status is JobStatus.FAILED
        assert "nonexistent.block" in final.result.error
        assert final.completed_at is not None
        assert self.client.list_executions("wf-missing") == []

    async def test_jobs_keep_their_own_inputs(self):
        """Test two jobs of the same workflow never mix their payloads."""
        first = await self.client.submit("user-1", JobKind.WORKFLOW, {"workflow": LINEAR, "input": {"id": 1}})
        second = await self.client.submit("user-1", JobKind.WORKFLOW, {"workflow": LINEAR, "input": {"id": 2}})

        first_done, second_done = await asyncio.gather(
            self.client.wait_for(first.id, timeout=5), self.client.wait_for(second.id, timeout=5)
        )

        assert first_done.id != second_done.id
        assert first_done.payload["input"] == {"id": 1}
        assert second_done.payload["input"] == {"id": 2}
        assert first_done.result.data["output"]["output"]["id"] == 1
        assert second_done.result.data["output"]["output"]["id"] == 2
        assert len(self.client.list_executions("wf-linear")) == 2

    async def test_concurrent_job_ids_are_unique(self):
        """Test concurrently created jobs get distinct ids."""

        async def create_one(n):
            await asyncio.sleep(0)
            return self.client.create_job(f"user-{n % 3}", JobKind.SEARCH, {"n": n})

        jobs = await asyncio.gather(*(create_one(n) for n in range(50)))

        assert len({job.id for job in jobs}) == 50

    async def test_second_start_conflicts(self):
        """Test starting a job that is already running raises a conflict."""
        job = self.client.create_job("user-1", JobKind.WORKFLOW, {"workflow": LINEAR, "input": {"id": 1}})
        running = asyncio.ensure_future(self.client.start_job(job.id))
        await asyncio.sleep(0)

        with pytest.raises(JobConflictError):
            await self.client.start_job(job.id)

        assert (await running).status is JobStatus.COMPLETED

    async def test_terminal_status_is_final(self):
        """Test cancelling a finished job changes nothing."""
        job = self.client.create_job("user-1", JobKind.WORKFLOW, {"workflow": LINEAR, "input": {"id": 1}})
        final = await self.client.start_job(job.id)
        completed_at = final.completed_at

        again = self.client.cancel_job(job.id)

        assert again.status is JobStatus.COMPLETED
        assert again.completed_at == completed_at

    async def test_job_limit_spares_running_jobs(self):
        """Test the job ceiling evicts only finished jobs."""
        client = make_client()
        client.jobs.max_jobs = 2
        release = asyncio.Event()

        async def slow(job, update_progress):
            await release.wait()
            return "done"

        client.register_runner(JobKind.UPLOAD, slow)
        running = await client.submit("user-1", JobKind.UPLOAD)
        await asyncio.sleep(0)
        finished = client.create_job("user-1", JobKind.SEARCH)
        client.cancel_job(finished.id)
        client.create_job("user-1", JobKind.SEARCH)

        assert client.get_job(running.id) is not None
        assert client.get_job(finished.id) is None
        assert client.get_job_stats().total == 2

        release.set()
        assert (await client.wait_for(running.id, timeout=5)).status is JobStatus.COMPLETED
        await client.close()


class TestWorkflowScenarios:
    """Integration test cases for foreground workflow runs."""

    async def test_topological_timing(self):
        """Test every node starts after all its predecessors finished."""
        client = make_client()

        result = await client.run(DIAMOND)

        assert result.status is WorkflowStatus.COMPLETED
        nodes = result.node_results
        for edge in DIAMOND["edges"]:
            assert nodes[edge["target"]].start_time >= nodes[edge["source"]].end_time
        assert result.output == {
            "join": {"l": {"tag": "L", "input": 1}, "r": {"tag": "R", "input": 1}},
        }

    async def test_yaml_file_with_sqlite_store(self, tmp_path):
        """Test a workflow loaded from YAML runs and its record persists in SQLite."""
        path = tmp_path / "workflow.yaml"
        path.write_text(
            "workflowId: wf-yaml\n"
            "nodes:\n"
            "  - id: seed\n"
            "    type: input.static\n"
            "    config:\n"
            "      data: [{id: 1, name: a}, {id: 1, name: b}, {id: 2, name: c}]\n"
            "  - id: dedupe\n"
            "    type: transform.fieldMapping\n"
            "    config:\n"
            "      operations: [{type: deduplicate, field: id}]\n"
            "edges:\n"
            "  - {source: seed, target: dedupe}\n"
        )
        db_path = str(tmp_path / "runs.db")
        client = make_client(backend=BackendType.SQLITE, db_path=db_path)

        result = await client.run(load_workflow_file(path))
        await client.close()

        reopened = make_client(backend=BackendType.SQLITE, db_path=db_path)
        stored = reopened.get_execution(result.execution_id)
        assert stored.status is WorkflowStatus.COMPLETED
        assert stored.output == {"dedupe": [{"id": 1, "name": "a"}, {"id": 2, "name": "c"}]}
        await reopened.close()

    async def test_node_retry_recovers_service_failure(self):
        """Test a node retry policy absorbs a transient service failure."""
        block = FlakyServiceBlock()
        client = make_client(blocks=[block])
        document = {
            "workflowId": "wf-retry",
            "nodes": [
                {
                    "id": "svc",
                    "type": "test.flakyService",
                    "retryConfig": {"maxRetries": 2, "initialDelay": 0.01},
                }
            ],
        }

        result = await client.run(document)

        assert result.status is WorkflowStatus.COMPLETED
        assert result.node_results["svc"].retry_count == 1
        assert result.output == {"svc": {"calls": 2}}


class TestReliabilityInRealTime:
    """Integration test cases for the reliability primitives with a real clock."""

    async def test_cache_ttl(self):
        """Test an entry set with a 100ms TTL is gone after 150ms."""
        cache = Cache(cleanup_interval=None)
        cache.set("k", "v", ttl=0.1)

        await asyncio.sleep(0.15)

        assert cache.get("k") is None

    async def test_rate_limit_window(self):
        """Test seven acquisitions of a 5-per-window limiter never exceed the window."""
        period = 0.2
        limiter = RateLimiter(max_requests=5, period=period)
        admitted = []
        waits = []

        for _ in range(7):
            waits.append(await limiter.acquire())
            admitted.append(time.monotonic())

        assert all(wait == 0 for wait in waits[:5])
        assert waits[5] > 0 and waits[6] > 0
        for i, start in enumerate(admitted):
            in_window = [t for t in admitted[i:] if t - start < period * 0.95]
            assert len(in_window) <= 5

    async def test_circuit_breaker_cycle(self):
        """Test three failures open the breaker and a trial is allowed after the timeout."""
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=0.05)
        calls = []

        async def failing():
            calls.append("fail")
            raise ConnectionError("down")

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(failing)
        assert len(calls) == 3

        await asyncio.sleep(0.06)

        assert breaker.state is CircuitState.HALF_OPEN
        assert await breaker.call(lambda: "trial") == "trial"
        assert breaker.state is CircuitState.CLOSED
