import unittest
from pathlib import Path

from fakes import FakeGenerator, FakeSource, FakeTimer, StorageTestCase, make_comment, make_post

from replybot.automation.runner import process_requests
from replybot.automation.scheduler import PollScheduler
from replybot.automation.workflow import CommentWorkflow
from replybot.errors import AuthError


class SchedulerTestBase(StorageTestCase, unittest.TestCase):
    def setUp(self):
        FakeTimer.created = []
        self.storage = self.make_storage()
        self.source = FakeSource(posts=[make_post("p1")], comments={"p1": [make_comment("c1", "p1")]})

    def build(self, generator=None, storage=None, workflow_cls=CommentWorkflow):
        storage = storage or self.storage
        workflow = workflow_cls(self.source, generator or FakeGenerator(), storage, self.make_executor())
        return PollScheduler(workflow, storage, poll_seconds=30, timer_factory=FakeTimer)


class StartStopTests(SchedulerTestBase):
    def test_start_runs_a_cycle_then_arms_the_timer(self):
        scheduler = self.build()

        self.assertTrue(scheduler.start())

        self.assertEqual([cid for cid, _ in self.source.public_calls], ["c1"])
        self.assertEqual(len(FakeTimer.created), 1)
        self.assertTrue(FakeTimer.created[0].started)
        self.assertEqual(FakeTimer.created[0].interval, 30)
        self.assertTrue(self.storage.load_automation_state()["running"])
        self.assertFalse(scheduler.start())
        self.assertEqual(len(FakeTimer.created), 1)

    def test_timer_fire_ticks_and_rearms(self):
        scheduler = self.build()
        scheduler.start()
        self.source.comments["p1"].append(make_comment("c2", "p1", text="another"))

        FakeTimer.created[0].fire()

        self.assertEqual([cid for cid, _ in self.source.public_calls], ["c1", "c2"])
        self.assertEqual(len(FakeTimer.created), 2)
        self.assertTrue(FakeTimer.created[1].started)

    def test_stop_is_idempotent(self):
        scheduler = self.build()
        scheduler.start()

        self.assertTrue(scheduler.stop())
        self.assertFalse(scheduler.stop())

        self.assertTrue(FakeTimer.created[0].cancelled)
        self.assertFalse(self.storage.load_automation_state()["running"])
        stopped = [r for r in self.storage.recent_logs(entry_type="info") if r["message"].startswith("Automation stopped")]
        self.assertEqual(len(stopped), 1)
        self.assertTrue(scheduler.wait(timeout=0))

    def test_tick_is_skipped_when_stopped(self):
        scheduler = self.build()
        self.assertFalse(scheduler.tick())
        self.assertEqual(self.source.post_limits, [])

    def test_tick_is_skipped_while_a_cycle_is_in_flight(self):
        nested = []

        class ReentrantGenerator(FakeGenerator):
            def generate_reply(self, comment_text, tone, context=None):
                nested.append(scheduler.tick())
                return super().generate_reply(comment_text, tone, context)

        scheduler = self.build(ReentrantGenerator())
        scheduler.start()

        self.assertEqual(nested, [False])
        self.assertEqual(len(self.source.post_limits), 1)
        self.assertFalse(scheduler.get_state()["is_processing"])

    def test_fatal_error_stops_automation_and_no_timer_is_armed(self):
        scheduler = self.build(FakeGenerator(replies={"love this": AuthError("OpenAI error 401: invalid api key")}))

        scheduler.start()

        state = scheduler.get_state()
        self.assertFalse(state["running"])
        self.assertEqual(state["error_count"], 1)
        self.assertEqual(FakeTimer.created, [])
        self.assertFalse(self.storage.load_automation_state()["running"])
        self.assertFalse(scheduler.tick())

    def test_unexpected_cycle_failure_is_contained(self):
        class BrokenWorkflow(CommentWorkflow):
            def run_cycle(self, state):
                raise RuntimeError("boom")

        scheduler = self.build(workflow_cls=BrokenWorkflow)
        scheduler.start()

        self.assertTrue(scheduler.get_state()["running"])
        self.assertEqual(scheduler.get_state()["error_count"], 1)
        self.assertEqual(len(self.storage.recent_logs(entry_type="error")), 1)
        self.assertTrue(scheduler.tick())
        self.assertEqual(self.storage.load_automation_state()["stats"]["error_count"], 2)


class RestoreTests(SchedulerTestBase):
    def test_restart_resumes_without_reprocessing(self):
        first = self.build()
        first.start()
        first.shutdown()
        self.assertTrue(self.storage.load_automation_state()["running"])
        self.assertTrue(FakeTimer.created[0].cancelled)

        self.source.comments["p1"].append(make_comment("c2", "p1", text="new one"))
        reopened = self.storage_at(Path(self._tmp.name))
        second = self.build(storage=reopened)

        self.assertTrue(second.restore_state())

        state = second.get_state()
        self.assertTrue(state["running"])
        self.assertEqual(state["stats"]["replies_posted"], 2)
        self.assertEqual(self.source.reply_calls_for("c1"), 1)
        self.assertEqual(self.source.reply_calls_for("c2"), 1)
        self.assertIsNotNone(state["last_check_time"])

    def test_restore_after_stop_keeps_counters_but_does_not_resume(self):
        first = self.build()
        first.start()
        first.stop()

        second = self.build(storage=self.storage_at(Path(self._tmp.name)))
        self.assertFalse(second.restore_state())

        state = second.get_state()
        self.assertFalse(state["running"])
        self.assertEqual(state["stats"]["replies_posted"], 1)
        self.assertEqual(state["processed_count"], 1)

    def test_restore_without_saved_state(self):
        scheduler = self.build()
        self.assertFalse(scheduler.restore_state())
        self.assertFalse(scheduler.get_state()["running"])


class ConfigTests(SchedulerTestBase):
    def test_interval_change_rearms_timer_and_keeps_running(self):
        scheduler = self.build()
        scheduler.start()
        first_timer = FakeTimer.created[0]

        changes = scheduler.update_config(poll_interval_seconds=60)

        self.assertEqual(changes, {"poll_seconds": 60.0})
        self.assertTrue(first_timer.cancelled)
        self.assertEqual(FakeTimer.created[-1].interval, 60.0)
        self.assertTrue(scheduler.get_state()["running"])

        calls_before = len(self.source.post_limits)
        first_timer.fire()
        self.assertEqual(len(self.source.post_limits), calls_before)
        self.assertEqual(len(FakeTimer.created), 2)

    def test_settings_apply_to_the_next_cycle(self):
        scheduler = self.build()

        scheduler.update_config(tone="Witty", selected_post_ids=["p9", " "], monitor_all=True)

        self.assertEqual(scheduler.workflow.tone, "witty")
        self.assertEqual(scheduler.workflow.selected_post_ids, ["p9"])
        self.assertTrue(scheduler.workflow.monitor_all)
        self.assertEqual(FakeTimer.created, [])
        with self.assertRaises(ValueError):
            scheduler.update_config(poll_interval_seconds=0)

    def test_reset_stats_zeroes_and_persists(self):
        scheduler = self.build()
        scheduler.start()
        self.assertEqual(scheduler.get_state()["stats"]["replies_posted"], 1)

        scheduler.reset_stats()

        self.assertEqual(scheduler.get_state()["stats"]["replies_posted"], 0)
        self.assertEqual(self.storage.load_automation_state()["stats"]["replies_posted"], 0)
        self.assertTrue(scheduler.get_state()["running"])


class CommandLineRequestTests(SchedulerTestBase):
    def test_stats_reset_request_reaches_the_running_scheduler(self):
        scheduler = self.build()
        scheduler.start()
        self.storage.request_stats_reset()

        process_requests(scheduler)
        self.source.comments["p1"].append(make_comment("c2", "p1", text="another"))
        FakeTimer.created[0].fire()

        self.assertEqual(scheduler.get_state()["stats"]["replies_posted"], 1)
        self.assertEqual(self.storage.load_automation_state()["stats"]["replies_posted"], 1)
        self.assertTrue(scheduler.get_state()["running"])
        self.assertFalse(self.storage.consume_stats_reset_request())

    def test_stop_request_stops_the_running_scheduler(self):
        scheduler = self.build()
        scheduler.start()
        self.storage.request_stop()

        process_requests(scheduler)

        self.assertFalse(scheduler.get_state()["running"])
        self.assertTrue(FakeTimer.created[0].cancelled)
        self.assertEqual(scheduler.get_state()["stats"]["replies_posted"], 1)

    def test_no_requests_leaves_the_scheduler_alone(self):
        scheduler = self.build()
        scheduler.start()

        process_requests(scheduler)

        self.assertTrue(scheduler.get_state()["running"])
        self.assertEqual(scheduler.get_state()["stats"]["replies_posted"], 1)


if __name__ == "__main__":
    unittest.main()
