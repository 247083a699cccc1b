"""
Tests for capture buffers, trigger decisions and the capture cycle.

Run with: pytest test_auto_capture.py -v
"""

import json

import pytest

from auto_capture import AutoCaptureService, CaptureInProgressError, perform_auto_capture
from conftest import ScriptedSummarizer, make_config
from extraction import ErrorKind, ExtractionError, MemoryExtractor
from utils import get_container_tags


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def __call__(self, title, message, variant):
        self.calls.append((title, message, variant))
        if self.fail:
            raise RuntimeError("toast failed")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(config, clock):
    return AutoCaptureService(config, clock)


def batch(*memories):
    return json.dumps({"memories": list(memories)})


def entry(summary, scope="project", type="project-config", reasoning="useful"):
    return {"summary": summary, "scope": scope, "type": type, "reasoning": reasoning}


class TestActivity:
    def test_buffer_created_lazily(self, service):
        assert service.get_stats("s1") is None
        service.add_message("s1", "user", "hello")
        service.add_tool("s1", "bash", {"cmd": "ls"}, "a b")
        service.on_file_edit("s1")

        stats = service.get_stats("s1")
        assert (stats.messages, stats.tools, stats.file_edits) == (1, 1, 1)

    def test_disabled_ignores_activity(self, service):
        service.toggle()
        service.add_message("s1", "user", "hello")
        service.on_file_edit("s1")
        assert service.get_stats("s1") is None
        assert not service.on_session_idle("s1")

    def test_toggle_flips(self, service):
        assert service.is_enabled
        assert service.toggle() is False
        assert service.toggle() is True

    def test_sessions_are_independent(self, service):
        service.add_message("a", "user", "x")
        service.add_message("b", "user", "y")
        service.add_message("b", "user", "z")
        assert service.get_stats("a").messages == 1
        assert service.get_stats("b").messages == 2

    def test_cleanup_forgets_session(self, service):
        service.add_message("s1", "user", "x")
        service.cleanup("s1")
        assert service.get_stats("s1") is None


class TestTriggers:
    def test_iteration_threshold(self, service):
        results = [service.on_session_idle("s1") for _ in range(5)]
        assert results == [False, False, False, False, True]
        assert service.get_stats("s1").iterations == 5

    def test_time_threshold(self, tmp_path, clock):
        service = AutoCaptureService(
            make_config(tmp_path, auto_capture_threshold=100, auto_capture_time_threshold=2), clock
        )
        assert not service.on_session_idle("s1")
        clock.now += 119
        assert not service.on_session_idle("s1")
        clock.now += 1
        assert service.on_session_idle("s1")

    def test_time_threshold_zero_disabled(self, tmp_path, clock):
        service = AutoCaptureService(make_config(tmp_path, auto_capture_threshold=100), clock)
        service.on_session_idle("s1")
        clock.now += 10_000
        assert not service.on_session_idle("s1")

    def test_capturing_session_not_retriggered(self, service):
        for _ in range(5):
            service.on_session_idle("s1")
        assert service.mark_capturing("s1")

        assert not service.on_session_idle("s1")
        assert service.get_stats("s1").iterations == 5


class TestCapturingState:
    def test_mark_capturing_is_exclusive(self, service):
        assert service.mark_capturing("s1")
        assert not service.mark_capturing("s1")
        assert service.is_capturing("s1")

    def test_clear_buffer_resets_everything(self, service, clock):
        service.add_message("s1", "user", "x")
        service.on_session_idle("s1")
        service.mark_capturing("s1")
        clock.now += 30

        service.clear_buffer("s1")

        stats = service.get_stats("s1")
        assert (stats.iterations, stats.messages, stats.tools, stats.file_edits) == (0, 0, 0, 0)
        assert stats.time_since_capture_ms == 0
        assert not stats.capturing
        assert service.mark_capturing("s1")

    def test_stats_time_since_capture(self, service, clock):
        service.add_message("s1", "user", "x")
        clock.now += 2.5
        assert service.get_stats("s1").time_since_capture_ms == 2500

    async def test_capturing_context_clears_on_error(self, service):
        service.add_message("s1", "user", "x")
        with pytest.raises(ValueError):
            async with service.capturing("s1"):
                assert service.is_capturing("s1")
                raise ValueError("boom")

        assert not service.is_capturing("s1")
        assert service.get_stats("s1").messages == 0

    async def test_capturing_context_refuses_reentry(self, service):
        async with service.capturing("s1"):
            with pytest.raises(CaptureInProgressError):
                async with service.capturing("s1"):
                    pass


class TestSummaryPrompt:
    def test_empty_buffer_has_no_prompt(self, service):
        assert service.build_summary_prompt("unknown") == ""
        service.on_file_edit("s1")
        assert service.build_summary_prompt("s1") == ""

    def test_prompt_includes_activity(self, service):
        service.add_message("s1", "user", "switch the project to Bun")
        service.add_message("s1", "assistant", "Done, updated package.json")
        service.add_tool("s1", "bash", {"command": "bun install"}, "ok")
        service.on_file_edit("s1")
        service.on_session_idle("s1")

        prompt = service.build_summary_prompt("s1")

        assert "USER: switch the project to Bun" in prompt
        assert "ASSISTANT: Done, updated package.json" in prompt
        assert '- bash: {"command": "bun install"}' in prompt
        assert "Files edited: 1" in prompt
        assert "Analyze the last 1 iterations" in prompt
        assert "Maximum 10 memories per capture" in prompt

    def test_user_prompts(self, service):
        service.add_message("s1", "user", "one")
        service.add_message("s1", "assistant", "reply")
        service.add_message("s1", "user", "two")
        assert service.user_prompts("s1") == ["one", "two"]


class TestCaptureCycle:
    """perform_auto_capture end to end against a real store."""

    async def capture(self, service, store, config, project, summarizer, notify=None, session="s1"):
        return await perform_auto_capture(
            service, MemoryExtractor(), store, config, session, project, summarizer, notify
        )

    async def test_saves_memories_into_scoped_partitions(self, service, store, config, project):
        service.add_message("s1", "user", "I always want TypeScript. This repo uses Bun.")
        summarizer = ScriptedSummarizer(
            batch(entry("Prefers TypeScript", "user", "preference"), entry("Uses Bun runtime"))
        )
        notify = RecordingNotifier()

        report = await self.capture(service, store, config, project, summarizer, notify)

        assert report.success
        assert (report.count("user"), report.count("project")) == (1, 1)
        tags = get_container_tags(project)
        user = await store.list_memories(tags.user)
        assert [m.content for m in user.memories] == ["Prefers TypeScript"]
        metadata = user.memories[0].metadata
        assert metadata["source"] == "auto-capture"
        assert metadata["session_id"] == "s1"
        assert metadata["reasoning"] == "useful"
        assert isinstance(metadata["capture_timestamp"], int)
        assert user.memories[0].attribution["project_name"] == "demo"
        assert notify.calls[0] == ("Auto-Capture", "Analyzing conversation...", "info")
        assert notify.calls[-1] == ("Memory Captured", "Saved 1 user + 1 project memories", "success")

    async def test_buffer_cleared_after_success(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        for _ in range(5):
            service.on_session_idle("s1")

        await self.capture(service, store, config, project, ScriptedSummarizer(batch()))

        stats = service.get_stats("s1")
        assert stats.iterations == 0
        assert stats.messages == 0
        assert not stats.capturing

    async def test_failure_clears_state_and_saves_nothing(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        notify = RecordingNotifier()
        summarizer = ScriptedSummarizer(ExtractionError("model down", ErrorKind.TRANSPORT))

        report = await self.capture(service, store, config, project, summarizer, notify)

        assert not report.success
        assert report.error == "model down"
        assert report.error_kind is ErrorKind.TRANSPORT
        assert not service.is_capturing("s1")
        assert service.get_stats("s1").messages == 0
        assert (await store.stats()).total == 0
        assert notify.calls[-1] == ("Auto-Capture Failed", "model down", "error")

    async def test_unexpected_exception_clears_state(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        report = await self.capture(
            service, store, config, project, ScriptedSummarizer(RuntimeError("kaboom"))
        )
        assert not report.success
        assert report.error == "kaboom"
        assert report.error_kind is None
        assert service.mark_capturing("s1")

    async def test_refuses_when_already_capturing(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        service.mark_capturing("s1")
        summarizer = ScriptedSummarizer(batch(entry("Uses Bun runtime")))

        report = await self.capture(service, store, config, project, summarizer)

        assert not report.success
        assert summarizer.prompts == []
        assert service.is_capturing("s1")

    async def test_empty_buffer_skips_model(self, service, store, config, project):
        service.on_file_edit("s1")
        summarizer = ScriptedSummarizer(batch(entry("never")))

        report = await self.capture(service, store, config, project, summarizer)

        assert report.success
        assert report.saved == []
        assert summarizer.prompts == []
        assert not service.is_capturing("s1")

    async def test_malformed_entries_skipped(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        summarizer = ScriptedSummarizer(
            batch(entry("Uses Bun runtime"), entry("bad scope", scope="team"), {"summary": "no type"})
        )

        report = await self.capture(service, store, config, project, summarizer)

        assert [m.scope for m in report.saved] == ["project"]
        assert report.invalid == 2

    async def test_capped_at_max_memories(self, tmp_path, store, project, clock):
        config = make_config(tmp_path, auto_capture_max_memories=2)
        service = AutoCaptureService(config, clock)
        service.add_message("s1", "user", "x")
        summarizer = ScriptedSummarizer(batch(*(entry(f"fact {i}") for i in range(5))))

        report = await self.capture(service, store, config, project, summarizer)

        assert len(report.saved) == 2
        assert (await store.stats()).total == 2

    async def test_near_duplicates_skipped(self, service, store, config, project):
        tags = get_container_tags(project)
        await store.add_memory("Uses Bun runtime", tags.project)
        service.add_message("s1", "user", "x")
        summarizer = ScriptedSummarizer(batch(entry("Uses Bun runtime"), entry("API under /api/v1")))

        report = await self.capture(service, store, config, project, summarizer)

        assert report.duplicates == 1
        assert len(report.saved) == 1
        assert (await store.stats()).total == 2

    async def test_same_fact_other_scope_not_duplicate(self, service, store, config, project):
        tags = get_container_tags(project)
        await store.add_memory("Prefers tabs", tags.project)
        service.add_message("s1", "user", "x")
        summarizer = ScriptedSummarizer(batch(entry("Prefers tabs", "user", "preference")))

        report = await self.capture(service, store, config, project, summarizer)

        assert report.duplicates == 0
        assert report.count("user") == 1

    async def test_unparseable_reply_saved_as_fallback(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        summarizer = ScriptedSummarizer("The user configured CI with GitHub Actions.")

        report = await self.capture(service, store, config, project, summarizer)

        assert report.fallback
        assert [(m.scope, m.type) for m in report.saved] == [("project", "conversation")]

    async def test_notifier_failure_is_ignored(self, service, store, config, project):
        service.add_message("s1", "user", "x")
        notify = RecordingNotifier(fail=True)
        summarizer = ScriptedSummarizer(batch(entry("Uses Bun runtime")))

        report = await self.capture(service, store, config, project, summarizer, notify)

        assert report.success
        assert len(report.saved) == 1
        assert len(notify.calls) == 2
