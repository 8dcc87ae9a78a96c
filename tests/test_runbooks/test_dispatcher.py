"""Tests for runbook dispatch"""

import pytest

from runbookd.actions.backends import BackendResult
from runbookd.actions.executor import ActionExecutor, ActionOutcome
from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.state_machine import AlertInstance, AlertState
from runbookd.exceptions import RunbookNotFound
from runbookd.runbooks.dispatcher import RunbookDispatcher
from runbookd.runbooks.runbook import (
    Applicability, DiagnosisStep, ResolutionStep, RunbookEntry, RunbookRegistry
)
from runbookd.runbooks.templates import ActionTemplate

from conftest import FakeBackend, make_rule

DISK_USAGE = ActionTemplate('disk_usage', 'shell', params={'path': 'path'},
                            command=('du', '-sh', '{path}'), mutating=False)
CLEAN_TMP = ActionTemplate('clean_tmp', 'shell', params={'path': 'path'},
                           command=('find', '{path}', '-delete'))
ROTATE_LOGS = ActionTemplate('rotate_logs', 'shell', command=('logrotate', '-f', '/etc/logrotate.conf'))


def disk_full_entry():
    return RunbookEntry(
        rule='disk_full',
        diagnosis=[DiagnosisStep(DISK_USAGE, 'localhost', {'path': '{labels.mount_point}'})],
        resolution=[
            ResolutionStep(CLEAN_TMP, 'localhost', {'path': '/tmp'},
                           when=Applicability(labels={'mount_point': '/'})),
            ResolutionStep(ROTATE_LOGS, 'localhost'),
            ResolutionStep(CLEAN_TMP, 'localhost', {'path': '/var/tmp'}),
        ],
    )


def firing_instance(severity=Severity.CRITICAL, mount_point='/', value=96.0):
    rule = make_rule('disk_full', group_by=['mount_point'], warning=(80, 0, 0), critical=(95, 0, 0))
    key = AlertKey('disk_full', (('mount_point', mount_point),), severity)
    instance = AlertInstance(key, rule, rule.tier(severity))
    instance.state = AlertState.FIRING
    instance.last_value = value
    return instance


class TestRunbookDispatcher:
    """Test diagnosis and ordered resolution"""

    @pytest.fixture
    def executor(self):
        def build(backend):
            executor = ActionExecutor(
                {'max_retries': 1, 'backoff_base': 0, 'backoff_max': 0, 'timeout': 5},
                {'shell': backend},
            )
            built.append(executor)
            return executor

        built = []
        yield build
        for executor in built:
            executor.shutdown()

    def dispatcher(self, executor, exhausted=None, entry=None):
        exhausted = exhausted if exhausted is not None else []
        return RunbookDispatcher(
            RunbookRegistry([entry or disk_full_entry()]),
            executor,
            on_remediation_exhausted=lambda inst, results: exhausted.append((inst, results)),
        )

    def test_critical_runs_diagnosis_and_resolution(self, executor):
        backend = FakeBackend()
        dispatcher = self.dispatcher(executor(backend))
        instance = firing_instance()

        plan = dispatcher.dispatch(instance)
        diagnosis = [f.result(timeout=5) for f in plan.diagnosis]
        results = plan.resolution.result(timeout=5)

        assert plan.remediation_enabled is True
        assert diagnosis[0].ok
        assert [r.outcome for r in results] == [ActionOutcome.SUCCESS] * 3
        resolution_calls = [c for c in backend.calls if c[0] != 'disk_usage']
        assert resolution_calls == [
            ('clean_tmp', 'localhost', {'path': '/tmp'}),
            ('rotate_logs', 'localhost', {}),
            ('clean_tmp', 'localhost', {'path': '/var/tmp'}),
        ]
        assert ('disk_usage', 'localhost', {'path': '/'}) in backend.calls
        assert len(instance.action_results) == 4

    def test_warning_is_notify_only(self, executor):
        backend = FakeBackend()
        dispatcher = self.dispatcher(executor(backend))

        plan = dispatcher.dispatch(firing_instance(Severity.WARNING, value=85.0))
        [f.result(timeout=5) for f in plan.diagnosis]

        assert plan.resolution is None
        assert plan.remediation_enabled is False
        assert [c[0] for c in backend.calls] == ['disk_usage']

    def test_non_applicable_step_skipped(self, executor):
        backend = FakeBackend()
        dispatcher = self.dispatcher(executor(backend))

        plan = dispatcher.dispatch(firing_instance(mount_point='/data'))
        results = plan.resolution.result(timeout=5)

        assert [r.action for r in results] == ['rotate_logs', 'clean_tmp']

    def test_stops_at_first_failure(self, executor):
        # clean_tmp fails on both attempts (one retry)
        backend = FakeBackend(results=[
            BackendResult(False, "", "exit status 1"),
            BackendResult(False, "", "exit status 1"),
        ])
        entry = RunbookEntry('disk_full', resolution=disk_full_entry().resolution)
        exhausted = []
        dispatcher = self.dispatcher(executor(backend), exhausted, entry)
        instance = firing_instance()

        results = dispatcher.dispatch(instance).resolution.result(timeout=5)

        assert len(results) == 1
        assert results[0].outcome == ActionOutcome.FAILURE
        assert results[0].retries == 1
        assert len(exhausted) == 1
        assert exhausted[0][0] is instance
        assert 'rotate_logs' not in [c[0] for c in backend.calls]

    def test_resolution_dropped_once_resolved(self, executor):
        backend = FakeBackend()
        dispatcher = self.dispatcher(executor(backend))
        instance = firing_instance()
        instance.state = AlertState.INACTIVE

        plan = dispatcher.dispatch(instance)

        assert plan.resolution.result(timeout=5) == []

    def test_invalid_parameter_counts_as_failure(self, executor):
        exhausted = []
        entry = RunbookEntry('disk_full', resolution=[
            ResolutionStep(CLEAN_TMP, 'localhost', {'path': '{labels.mount_point}/../etc'}),
        ])
        dispatcher = RunbookDispatcher(
            RunbookRegistry([entry]), executor(FakeBackend()),
            on_remediation_exhausted=lambda inst, results: exhausted.append(results),
        )

        results = dispatcher.dispatch(firing_instance()).resolution.result(timeout=5)

        assert results[0].outcome == ActionOutcome.FAILURE
        assert "rejected" in results[0].error
        assert len(exhausted) == 1

    def test_runbook_not_found(self, executor):
        dispatcher = RunbookDispatcher(RunbookRegistry(), executor(FakeBackend()))
        with pytest.raises(RunbookNotFound):
            dispatcher.dispatch(firing_instance())


class TestDryRun:
    """Test rendering resolution steps without executing them"""

    def test_dry_run(self):
        backend = FakeBackend()
        executor = ActionExecutor({}, {'shell': backend})
        try:
            dispatcher = RunbookDispatcher(RunbookRegistry([disk_full_entry()]), executor)
            planned = dispatcher.dry_run('disk_full', (('mount_point', '/data'),), Severity.CRITICAL)
        finally:
            executor.shutdown()

        assert [p.applicable for p in planned] == [False, True, True]
        assert planned[1].command == "logrotate -f /etc/logrotate.conf"
        assert str(planned[0]) == "[skip] find /tmp -delete"
        assert backend.calls == []

    def test_dry_run_unknown_rule(self):
        executor = ActionExecutor({}, {})
        try:
            with pytest.raises(RunbookNotFound):
                RunbookDispatcher(RunbookRegistry(), executor).dry_run('x', (), Severity.WARNING)
        finally:
            executor.shutdown()
