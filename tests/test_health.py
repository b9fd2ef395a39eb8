import pathlib
import sys
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
HERE = ROOT / "tests"
for p in (ROOT, HERE):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from PySide6 import QtCore

from fakes import FakeClock, FakeEnumerator, FakeNetwork, FakeOracle, FakeTree, pane
from fleetwatch.alerts import ALERT_STUCK, ALERT_ZOMBIE, AlertTracker, generate_alert_id
from fleetwatch.config import AppConfig
from fleetwatch.errors import CollaboratorTimeout, ToolUnavailable
from fleetwatch.health import HealthMonitor, map_classification, summarize
from fleetwatch.identity import IdentityResolver
from fleetwatch.interfaces import RawClassification
from fleetwatch.models import IDLE, STUCK, UNKNOWN, USEFUL, WAITING, ZOMBIE


def setUpModule():
    global _app
    _app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])


STUCK_ID = generate_alert_id(ALERT_STUCK, "s", "s__cc_1")


class MappingTests(unittest.TestCase):
    def test_oracle_vocabulary(self):
        self.assertEqual(map_classification("useful_bad"), USEFUL)
        self.assertEqual(map_classification("abandoned"), STUCK)
        self.assertEqual(map_classification("ZOMBIE"), ZOMBIE)
        self.assertEqual(map_classification("sleepy"), UNKNOWN)
        self.assertEqual(map_classification(""), UNKNOWN)


class HealthMonitorTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.enumerator = FakeEnumerator({
            "s": [pane("s", 0, "s__cc_1", 100), pane("s", 1, "s__cod_1", 200)],
        })
        self.resolver = IdentityResolver(self.enumerator, tree=FakeTree(), clock=self.clock)
        self.resolver.refresh()
        self.oracle = FakeOracle({100: ("stuck", 0.9), 200: ("useful", 0.8)}, clock=self.clock)
        self.network = FakeNetwork()
        self.tracker = AlertTracker(clock=self.clock)
        self.monitor = HealthMonitor(
            self.resolver, self.oracle, self.tracker,
            network=self.network,
            check_interval=30,
            stuck_threshold=2,
            idle_threshold=5,
            clock=self.clock,
        )

    def test_stuck_alert_fires_on_third_observation(self):
        raised = []
        for _ in range(3):
            raised.append(len(self.monitor.poll_once()))
            self.clock.advance(1)
        self.assertEqual(raised, [0, 0, 1])

        alert = self.tracker.get(STUCK_ID)
        self.assertEqual(alert.severity, "warning")
        self.assertEqual(alert.source, "health_monitor")
        self.assertEqual(alert.context["pid"], 100)
        self.assertEqual(alert.message, "Agent s__cc_1 has been stuck for 2s")

    def test_repeat_alerts_merge(self):
        for _ in range(5):
            self.monitor.poll_once()
            self.clock.advance(1)
        self.assertEqual(self.tracker.get(STUCK_ID).count, 3)
        self.assertEqual(len(self.tracker.active()), 1)

    def test_since_only_moves_on_change(self):
        start = self.clock.now
        self.monitor.poll_once()
        self.clock.advance(1)
        self.monitor.poll_once()
        state = self.monitor.state("s__cc_1")
        self.assertEqual(state.since, start)
        self.assertEqual(state.consecutive_count, 2)
        self.assertEqual(len(state.history), 2)

        self.oracle.labels[100] = ("useful", 0.7)
        self.clock.advance(1)
        self.monitor.poll_once()
        state = self.monitor.state("s__cc_1")
        self.assertEqual(state.classification, USEFUL)
        self.assertEqual(state.since, self.clock.now)
        self.assertEqual(state.consecutive_count, 1)

    def test_leaving_stuck_resolves_alert(self):
        for _ in range(3):
            self.monitor.poll_once()
            self.clock.advance(1)
        self.assertIsNotNone(self.tracker.get(STUCK_ID))

        self.oracle.labels[100] = ("useful", 0.9)
        self.monitor.poll_once()
        self.assertIsNone(self.tracker.get(STUCK_ID))
        self.assertIn(STUCK_ID, [a.id for a in self.tracker.resolved()])

    def test_recent_network_activity_downgrades_stuck(self):
        self.network.last = {100: self.clock.now - 5}
        for _ in range(4):
            self.network.last = {100: self.clock.now - 5}
            self.assertEqual(self.monitor.poll_once(), [])
            self.clock.advance(1)

        state = self.monitor.state("s__cc_1")
        self.assertEqual(state.classification, WAITING)
        self.assertTrue(state.history[-1].network_active)

    def test_stale_network_activity_is_ignored(self):
        self.network.last = {100: self.clock.now - 60}
        self.monitor.poll_once()
        state = self.monitor.state("s__cc_1")
        self.assertEqual(state.classification, STUCK)
        self.assertFalse(state.history[-1].network_active)

    def test_missing_network_tool_disables_downgrade(self):
        self.network.error = ToolUnavailable("rano not installed")
        self.monitor.poll_once()
        self.assertIsNone(self.monitor.network)
        self.assertEqual(self.monitor.state("s__cc_1").classification, STUCK)

    def test_zombie_alerts_immediately(self):
        self.oracle.labels[200] = ("zombie", 0.99)
        raised = self.monitor.poll_once()
        self.assertEqual([a.type for a in raised], [ALERT_ZOMBIE])
        self.assertEqual(raised[0].severity, "error")
        self.assertEqual(raised[0].message, "Agent s__cod_1 is a zombie process")
        self.assertEqual(self.monitor.notifications.qsize(), 1)

    def test_notifications_carry_merged_count(self):
        self.oracle.labels[200] = ("zombie", 0.99)
        self.monitor.poll_once()
        self.clock.advance(1)
        self.monitor.poll_once()
        drained = self.monitor.notifications.drain()
        self.assertEqual([a.count for a in drained], [1, 2])

    def test_panes_sharing_a_title_are_both_classified(self):
        enumerator = FakeEnumerator({
            "a": [pane("a", 0, "zsh", 100)],
            "b": [pane("b", 0, "zsh", 200)],
        })
        resolver = IdentityResolver(enumerator, tree=FakeTree(), clock=self.clock)
        resolver.refresh()
        oracle = FakeOracle({100: ("zombie", 0.99), 200: ("useful", 0.8)})
        monitor = HealthMonitor(resolver, oracle, self.tracker, clock=self.clock)

        raised = monitor.poll_once()
        self.assertEqual(sorted(monitor.all_states()), ["a:0", "b:0"])
        self.assertEqual([(a.type, a.pane) for a in raised], [(ALERT_ZOMBIE, "a:0")])

    def test_idle_threshold(self):
        self.oracle.labels[200] = ("idle", 0.6)
        counts = []
        for _ in range(6):
            counts.append(sum(1 for a in self.monitor.poll_once() if a.pane == "s__cod_1"))
            self.clock.advance(1)
        self.assertEqual(counts, [0, 0, 0, 0, 0, 1])
        self.assertEqual(self.monitor.state("s__cod_1").classification, IDLE)

    def test_vanished_worker_is_pruned(self):
        self.oracle.labels[200] = ("zombie", 0.99)
        self.monitor.poll_once()
        zombie_id = generate_alert_id(ALERT_ZOMBIE, "s", "s__cod_1")
        self.assertIsNotNone(self.tracker.get(zombie_id))

        self.enumerator.sessions["s"] = [pane("s", 0, "s__cc_1", 100)]
        self.resolver.refresh()
        self.monitor.poll_once()

        self.assertIsNone(self.monitor.state("s__cod_1"))
        self.assertEqual(list(self.monitor.all_states()), ["s__cc_1"])
        self.assertIsNone(self.tracker.get(zombie_id))

    def test_partial_batch_keeps_good_entries(self):
        del self.oracle.labels[200]
        self.oracle.extra = [RawClassification(pid=200, label="idle", confidence=None)]
        with self.assertLogs("fleetwatch.health", level="WARNING"):
            self.monitor.poll_once()
        self.assertEqual(list(self.monitor.all_states()), ["s__cc_1"])

    def test_one_batched_call_per_pass(self):
        self.monitor.poll_once()
        self.assertEqual(len(self.oracle.calls), 1)
        self.assertEqual(sorted(self.oracle.calls[0]), [100, 200])

    def test_descendant_classification_preferred(self):
        self.resolver.tree = FakeTree({100: [101]})
        self.resolver.refresh()
        self.oracle.labels[101] = ("useful", 0.95)
        self.monitor.poll_once()
        state = self.monitor.state("s__cc_1")
        self.assertEqual(state.pid, 101)
        self.assertEqual(state.classification, USEFUL)

    def test_slow_oracle_times_out(self):
        self.oracle.delay = 31
        with self.assertRaises(CollaboratorTimeout):
            self.monitor.poll_once()
        self.assertEqual(self.monitor.all_states(), {})

    def test_no_panes(self):
        self.enumerator.sessions["s"] = []
        self.resolver.refresh()
        self.assertEqual(self.monitor.poll_once(), [])
        self.assertEqual(self.oracle.calls, [])

    def test_states_are_copies(self):
        self.monitor.poll_once()
        got = self.monitor.state("s__cc_1")
        got.history.clear()
        got.classification = ZOMBIE
        fresh = self.monitor.state("s__cc_1")
        self.assertEqual(fresh.classification, STUCK)
        self.assertEqual(len(fresh.history), 1)

    def test_alerts_ready_signal(self):
        seen = []
        self.monitor.alerts_ready.connect(seen.append)
        self.oracle.labels[200] = ("zombie", 1.0)
        self.monitor.poll_once()
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0][0].type, ALERT_ZOMBIE)

    def test_force_check_requires_running(self):
        self.assertEqual(self.monitor.force_check(), [])
        self.assertEqual(self.oracle.calls, [])

    def test_stats_and_summary(self):
        self.monitor.poll_once()
        stats = self.monitor.stats()
        self.assertEqual(stats["agent_count"], 2)
        self.assertEqual(stats["by_state"], {STUCK: 1, USEFUL: 1})
        self.assertFalse(stats["running"])
        self.assertEqual(summarize(self.monitor.all_states()),
                         [("s__cc_1", STUCK, 0.9), ("s__cod_1", USEFUL, 0.8)])

    def test_from_config_honours_network_switch(self):
        cfg = AppConfig(use_network_activity=False, stuck_threshold_seconds=42)
        monitor = HealthMonitor.from_config(cfg, self.resolver, self.oracle, self.tracker, network=self.network)
        self.assertIsNone(monitor.network)
        self.assertEqual(monitor.stuck_threshold, 42)


if __name__ == "__main__":
    unittest.main()
