"""Tests for misaka.jobs — subprocess pipelines and job control."""

import asyncio

import pytest

from misaka.errors import ProcessError
from misaka.jobs import format_result


def _finished(jobs, **kwargs):
    """Create a job plus a future resolved with (error, job) when it is done."""
    future = asyncio.get_running_loop().create_future()

    def done(error, job):
        if not future.done():
            future.set_result((error, job))

    return jobs.create(done=done, **kwargs), future


class TestJobExecution:
    """Test step sequencing and outcomes."""

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, jobs):
        job, finished = _finished(jobs)
        job.exec("echo one").exec(["echo", "two"])
        error, _ = await asyncio.wait_for(finished, 3)
        assert error is None
        assert job.output == "one\ntwo\n"

    @pytest.mark.asyncio
    async def test_failure_stops_pipeline(self, jobs):
        job, finished = _finished(jobs)
        job.exec("exit 2").exec("echo s2")
        error, _ = await asyncio.wait_for(finished, 3)
        assert isinstance(error, ProcessError)
        assert error.code == 2
        assert error.signal is None
        assert "s2" not in job.output

    @pytest.mark.asyncio
    async def test_stderr_goes_to_output_and_errors(self, jobs):
        job, finished = _finished(jobs)
        job.exec("echo out; echo err >&2")
        await asyncio.wait_for(finished, 3)
        assert "out" in job.output
        assert "err" in job.output
        assert job.errors == "err\n"

    @pytest.mark.asyncio
    async def test_spawn_failure(self, jobs):
        job, finished = _finished(jobs)
        job.exec(["/nonexistent/misaka-binary"])
        error, _ = await asyncio.wait_for(finished, 3)
        assert error.code == -1
        assert error.describe().startswith("failed to start")

    @pytest.mark.asyncio
    async def test_stop_kills_running_step(self, jobs):
        job, finished = _finished(jobs)
        job.exec(["sleep", "5"]).exec("echo never")
        await asyncio.sleep(0.2)
        job.skip().stop()
        error, _ = await asyncio.wait_for(finished, 3)
        assert error.signal == "SIGTERM"
        assert error.code is None
        assert "never" not in job.output

    @pytest.mark.asyncio
    async def test_stop_while_spawning(self, jobs):
        job, finished = _finished(jobs)
        job.exec(["sleep", "5"])
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        job.skip().stop()
        error, _ = await asyncio.wait_for(finished, 3)
        assert error is not None
        assert error.signal == "SIGTERM"

    @pytest.mark.asyncio
    async def test_bad_options_end_the_job(self, jobs):
        job, finished = _finished(jobs)
        job.exec(["echo", "hi"], {"no_such_option": True}).exec("echo s2")
        error, _ = await asyncio.wait_for(finished, 3)
        assert error.code == -1
        assert "s2" not in job.output
        assert jobs.find(job.job_id) is None

    @pytest.mark.asyncio
    async def test_done_job_ignores_exec_and_stop(self, jobs):
        job, finished = _finished(jobs)
        job.exec("true")
        await asyncio.wait_for(finished, 3)
        assert job.done is True
        job.exec("echo again").stop()
        assert job.pending == 0
        assert jobs.find(job.job_id) is None

    @pytest.mark.asyncio
    async def test_step_callback(self, jobs):
        seen = []
        job, finished = _finished(jobs)
        job.exec("exit 1", lambda err, j: seen.append(err.code))
        await asyncio.wait_for(finished, 3)
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_action_hook_can_restart(self, jobs):
        job, finished = _finished(jobs)
        calls = []

        def hook(error, j):
            calls.append(error)
            if error is not None:
                j.exec("echo fallback")

        job.action(hook).exec("exit 1")
        error, _ = await asyncio.wait_for(finished, 3)
        assert error is None
        assert len(calls) == 2
        assert calls[0].code == 1
        assert calls[1] is None
        assert "fallback" in job.output

    def test_empty_argv_rejected(self, jobs):
        with pytest.raises(ValueError):
            jobs.create().exec([])

    def test_create_defaults(self, jobs):
        job = jobs.create()
        assert job.job_id
        assert len(job.job_hash) == 16
        assert job.started is False
        assert len(jobs) == 0


class TestWatchers:
    """Test coalesced output notifications."""

    @pytest.mark.asyncio
    async def test_watchers_are_coalesced(self, jobs):
        job, finished = _finished(jobs)
        calls = []
        job.add_watcher(lambda j: calls.append(j.output))
        job.exec("echo a; echo b; echo c; sleep 0.3")
        await asyncio.wait_for(finished, 3)
        await asyncio.sleep(0.1)
        assert len(calls) == 1
        assert calls[0] == "a\nb\nc\n"

    @pytest.mark.asyncio
    async def test_failing_watcher_does_not_break_job(self, jobs):
        job, finished = _finished(jobs)

        def broken(j):
            raise RuntimeError("watcher bug")

        job.add_watcher(broken)
        job.exec("echo hi; sleep 0.2")
        error, _ = await asyncio.wait_for(finished, 3)
        assert error is None

    def test_watcher_added_once(self, jobs):
        job = jobs.create()

        def watcher(j):
            pass

        job.add_watcher(watcher).add_watcher(watcher)
        assert job._watchers == [watcher]
        job.remove_watcher(watcher).remove_watcher(watcher)
        assert job._watchers == []


class TestJobControl:
    """Test job events from last order."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, jobs):
        reports = []
        jobs.control("status", "404", "h", lambda *args: reports.append(args))
        assert reports == [("404", "h", "", "job 404 is not running")]

    @pytest.mark.asyncio
    async def test_status(self, jobs):
        job, finished = _finished(jobs, job_id="1", job_hash="h1", to="touma")
        job.exec("echo started; sleep 0.5").exec("true")
        await asyncio.sleep(0.2)

        reports = []
        jobs.control("status", "1", "h1", lambda *args: reports.append(args))
        job_id, job_hash, to, text = reports[0]
        assert (job_id, job_hash, to) == ("1", "h1", "touma")
        assert "is running" in text
        assert "(1 more queued)" in text
        assert "started" in text
        await asyncio.wait_for(finished, 3)

    @pytest.mark.asyncio
    async def test_hash_mismatch_stops_orphan(self, jobs):
        job, finished = _finished(jobs, job_id="1", job_hash="right")
        job.exec(["sleep", "5"]).exec("echo s2")
        await asyncio.sleep(0.2)

        reports = []
        jobs.control("status", "1", "wrong", lambda *args: reports.append(args))
        assert "hash mismatch" in reports[0][3]

        error, _ = await asyncio.wait_for(finished, 3)
        assert error.signal == "SIGTERM"
        assert "s2" not in job.output
        assert len(reports) == 1

    @pytest.mark.asyncio
    async def test_stop(self, jobs):
        job, finished = _finished(jobs, job_id="1", job_hash="h")
        job.exec(["sleep", "5"])
        await asyncio.sleep(0.2)

        reports = []
        jobs.control("stop", "1", "h", lambda *args: reports.append(args))
        assert reports[0][3] == "stopping job 1"
        error, _ = await asyncio.wait_for(finished, 3)
        assert error.signal == "SIGTERM"

    @pytest.mark.asyncio
    async def test_watch_streams_output(self, jobs):
        job, finished = _finished(jobs, job_id="1", job_hash="h")
        job.exec("sleep 0.2; echo tick; sleep 0.3; echo tock; sleep 0.2")
        await asyncio.sleep(0.05)

        reports = []
        jobs.control("watch", "1", "h", lambda *args: reports.append(args))
        jobs.control("watch", "1", "h", lambda *args: reports.append(args))
        await asyncio.wait_for(finished, 3)

        texts = [r[3] for r in reports]
        assert texts == ["```\ntick\n```", "```\ntock\n```"]

    @pytest.mark.asyncio
    async def test_unknown_action(self, jobs):
        job, finished = _finished(jobs, job_id="1", job_hash="h")
        job.exec("sleep 0.2")

        reports = []
        jobs.control("explode", "1", "h", lambda *args: reports.append(args))
        assert reports[0][3] == "unknown job action: explode"
        await asyncio.wait_for(finished, 3)

    @pytest.mark.asyncio
    async def test_stop_all(self, jobs):
        first, first_done = _finished(jobs)
        second, second_done = _finished(jobs)
        first.exec(["sleep", "5"])
        second.exec(["sleep", "5"])
        await asyncio.sleep(0.2)
        assert len(jobs) == 2

        jobs.stop_all()
        await asyncio.wait_for(asyncio.gather(first_done, second_done), 3)
        assert len(jobs) == 0


class TestFormatResult:
    """Test reply text of finished jobs."""

    def test_no_output(self, jobs):
        assert format_result(None, jobs.create()) == "command finished with no output"

    def test_stderr_block_when_not_in_output(self, jobs):
        job = jobs.create()
        job.output = "partial\n"
        job.errors = "disk full\n"
        text = format_result(ProcessError("x", code=1), job)
        assert text == "command failed: exit code 1\n```\npartial\n```\nstderr:\n```\ndisk full\n```"
