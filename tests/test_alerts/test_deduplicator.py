"""Tests for severity deduplication"""

import pytest

from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.deduplicator import Deduplicator, EventType
from runbookd.alerts.rule_engine import RuleEngine
from runbookd.alerts.state_machine import AlertStateMachine, AlertStore

from conftest import at, make_rule


class Pipeline:
    """Rule engine -> state machine -> deduplicator, as one tick applies them"""

    def __init__(self, rule, source):
        self.rule = rule
        self.store = AlertStore()
        self.machine = AlertStateMachine(self.store)
        self.engine = RuleEngine(source)
        self.dedup = Deduplicator()

    def tick(self, seconds):
        now = at(seconds)
        events = []
        observations = self.engine.evaluate_detailed(
            self.rule, now, self.store.label_sets(self.rule.name)
        )
        for labels, per_tier in observations.items():
            for tier in self.rule.tiers:
                obs = per_tier[tier.severity]
                self.machine.observe(self.rule, tier, labels, obs.breach, obs.value, now)
            tracks = self.store.tracks(self.rule.name, labels)
            events.extend(self.dedup.reconcile(self.rule.name, labels, tracks, now))
        return events


class TestDeduplicator:
    """Test that only the highest firing severity surfaces"""

    @pytest.fixture
    def rule(self):
        return make_rule(warning=(80, 300, 60), critical=(95, 120, 60))

    def test_critical_suppresses_warning(self, rule, source):
        """CPU at 82% then 96% from t=1m: Critical fires at 3m, Warning at 5m silently"""
        pipeline = Pipeline(rule, source)
        events = {}
        for t in range(0, 390, 30):
            source.set("cpu", 82.0 if t < 60 else 96.0)
            events[t] = pipeline.tick(t)

        critical = AlertKey("high_cpu", (), Severity.CRITICAL)
        warning = AlertKey("high_cpu", (), Severity.WARNING)

        assert pipeline.store.get(critical).fired_at == at(180)
        assert pipeline.store.get(warning).fired_at == at(300)

        fired = [(t, e) for t, evs in events.items() for e in evs]
        assert len(fired) == 1
        t, event = fired[0]
        assert t == 180
        assert event.event_type == EventType.FIRING
        assert event.key == critical

    def test_one_firing_per_occurrence(self, rule, source):
        """Warning then Critical produces one firing and one escalated event"""
        pipeline = Pipeline(rule, source)
        source.set("cpu", 85.0)
        all_events = []
        for t in range(0, 330, 30):
            all_events.extend(pipeline.tick(t))

        source.set("cpu", 99.0)
        for t in range(330, 480, 30):
            all_events.extend(pipeline.tick(t))

        types = [e.event_type for e in all_events]
        assert types == [EventType.FIRING, EventType.ESCALATED]
        assert all_events[1].previous == AlertKey("high_cpu", (), Severity.WARNING)
        assert all_events[1].starts_firing

    def test_downgrade_then_resolve(self, rule, source):
        pipeline = Pipeline(rule, source)
        source.set("cpu", 99.0)
        for t in range(0, 330, 30):
            pipeline.tick(t)

        source.set("cpu", 85.0)
        events = []
        for t in range(330, 450, 30):
            events.extend(pipeline.tick(t))
        assert [e.event_type for e in events] == [EventType.DOWNGRADED]
        assert events[0].key.severity == Severity.WARNING
        assert not events[0].starts_firing

        source.set("cpu", 10.0)
        events = []
        for t in range(450, 570, 30):
            events.extend(pipeline.tick(t))
        assert [e.event_type for e in events] == [EventType.RESOLVED]
        assert events[0].key.severity == Severity.WARNING
        assert pipeline.dedup.surfaced("high_cpu", ()) is None

    def test_no_event_without_change(self, rule, source):
        pipeline = Pipeline(rule, source)
        source.set("cpu", 99.0)
        events = []
        for t in range(0, 900, 30):
            events.extend(pipeline.tick(t))
        assert len(events) == 1

    def test_forget_rules(self):
        dedup = Deduplicator()
        rule = make_rule(critical=(95, 0, 0))
        store = AlertStore()
        AlertStateMachine(store).observe(rule, rule.tiers[0], (), True, 99.0, at(0))
        dedup.reconcile("high_cpu", (), store.tracks("high_cpu", ()), at(0))

        dedup.forget_rules([])

        assert dedup.surfaced("high_cpu", ()) is None
