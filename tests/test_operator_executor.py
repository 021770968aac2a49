"""Tests for env_opr.executor module.

Uses a fake engine recording calls to test execution ordering, failure
handling, ledger bookkeeping and dry-run behavior without real
infrastructure.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import CancelToken
from config import load_workspace_config
from env_opr.executor import EnvironmentOperator, NodeOutcome, compose_inputs
from env_opr.ledger import Ledger, stable_scope
from env_opr.locks import StateLocks
from env_opr.resolver import ResolvedEnvironment
from errors import (
    LedgerError,
    LiveEphemeralError,
    StableInUseError,
    UnresolvedStableBindingError,
)
from registry import DependencyPolicy, MixingPolicy, ServiceRegistry

from conftest import write_workspace


def _operator(scenario, engine, **kwargs):
    config, catalog, ledger = scenario
    return EnvironmentOperator(catalog=catalog, config=config, ledger=ledger, engine=engine, **kwargs)


def _wide_scenario(tmp_path, on_error='stop', max_parallel=4):
    """top depends on a, b, c; each of a, b, c is independent."""
    root = write_workspace(tmp_path / 'wide', {
        'top': 'name: top\ndepends: [a, b, c]\n',
        'a': 'name: a\n',
        'b': 'name: b\n',
        'c': 'name: c\n',
    }, workspace=f'project: {{name: wide}}\ndefaults: {{on_error: {on_error}, max_parallel: {max_parallel}}}\n')
    config = load_workspace_config(root)
    return config, ServiceRegistry(config).load(), Ledger(config.state_dir)


class TestDeployScenario:
    """networking/database/api for MR 123 with database bound to stable."""

    def test_apply_order_and_bindings(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database', outputs={'url': 'db.sandbox.internal'})

        report = _operator(scenario, fake_engine).deploy('123', service='api')

        assert report.success
        assert fake_engine.names('apply') == ['networking', 'api']
        assert report.plan.batches == [['networking'], ['api']]
        assert report.applied == ['api', 'networking']
        assert report.nodes['database'].status == 'bound'
        assert report.nodes['database'].state_key == 'stable/sandbox/database/terraform.tfstate'

    def test_state_keys_passed_to_engine(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        _operator(scenario, fake_engine).deploy('123', service='api')

        keys = {c[1]: c[2] for c in fake_engine.calls}
        assert keys == {
            'networking': 'ephemeral/myapp-123/networking/terraform.tfstate',
            'api': 'ephemeral/myapp-123/api/terraform.tfstate',
        }

    def test_inputs_from_dependency_outputs(self, scenario, seed_stable, make_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database', outputs={'url': 'db.sandbox.internal'})
        engine = make_engine(outputs={'networking': {'vpc_id': 'vpc-1'}})

        _operator(scenario, engine).deploy('123', service='api')

        api_inputs = [c[3] for c in engine.calls if c[1] == 'api'][0]
        assert api_inputs == {'networking_vpc_id': 'vpc-1', 'database_url': 'db.sandbox.internal'}

    def test_ledger_records(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        _operator(scenario, fake_engine).deploy('123', service='api')

        entries = {e.service_name: e for e in ledger.list('123')}
        assert sorted(entries) == ['api', 'database', 'networking']
        assert entries['networking'].status == 'applied'
        assert entries['networking'].outputs == {'networking_id': 'networking-123'}
        assert entries['networking'].resource_ids == ['null_resource.networking']
        assert entries['api'].dependencies == ['networking', 'database']
        assert entries['database'].kind == 'stable'
        assert entries['database'].state_key == 'stable/sandbox/database/terraform.tfstate'

    def test_stable_ledger_untouched(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        before = [e.to_dict() for e in ledger.list(stable_scope('sandbox'))]

        _operator(scenario, fake_engine).deploy('123', service='api')
        assert [e.to_dict() for e in ledger.list(stable_scope('sandbox'))] == before

    def test_unresolved_binding_applies_nothing(self, scenario, fake_engine):
        _, _, ledger = scenario
        with pytest.raises(UnresolvedStableBindingError):
            _operator(scenario, fake_engine).deploy('123', service='api')
        assert fake_engine.calls == []
        assert ledger.list() == []

    def test_override_makes_everything_ephemeral(self, scenario, fake_engine):
        overrides = {'database': DependencyPolicy.parse('ephemeral')}
        report = _operator(scenario, fake_engine, overrides=overrides).deploy('123', service='api')

        assert report.plan.batches == [['networking'], ['database'], ['api']]
        assert fake_engine.names('apply') == ['networking', 'database', 'api']

    def test_discovers_service_from_cwd(self, scenario, scenario_root, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        report = _operator(scenario, fake_engine).deploy('123', cwd=scenario_root / 'services' / 'api')
        assert report.root == 'api'

    def test_redeploy_is_idempotent_in_ledger(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')
        operator.deploy('123', service='api')
        assert len(ledger.list('123')) == 3


class TestDeployFailures:
    """Tests for failure propagation."""

    def test_failed_dependency_skips_dependents(self, scenario, seed_stable, make_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        engine = make_engine(fail={'networking'})

        report = _operator(scenario, engine).deploy('123', service='api')

        assert not report.success
        assert engine.names('apply') == ['networking']
        assert report.failed == ['networking']
        assert report.skipped == ['api']
        assert 'apply exploded' in report.nodes['networking'].error
        entry = ledger.get(('123', 'networking'))
        assert entry.status == 'failed'
        assert entry.error == '[networking] apply exploded'
        assert ledger.get(('123', 'api')) is None

    def test_failed_reapply_keeps_last_results(self, scenario, make_engine):
        _, _, ledger = scenario
        _operator(scenario, make_engine(outputs={'networking': {'vpc_id': 'vpc-1'}})).deploy(
            '123', service='networking')

        report = _operator(scenario, make_engine(fail={'networking'})).deploy('123', service='networking')

        assert report.failed == ['networking']
        entry = ledger.get(('123', 'networking'))
        assert entry.status == 'failed'
        assert entry.outputs == {'vpc_id': 'vpc-1'}
        assert entry.resource_ids == ['null_resource.networking']

    def test_stop_mode_skips_later_batches(self, tmp_path, make_engine):
        scenario = _wide_scenario(tmp_path, on_error='stop')
        engine = make_engine(fail={'b'})

        report = _operator(scenario, engine).deploy('1', service='top')

        assert report.failed == ['b']
        assert 'top' in report.skipped
        assert 'top' not in engine.names('apply')

    def test_stop_mode_skips_unstarted_batch_members(self, tmp_path, make_engine):
        scenario = _wide_scenario(tmp_path, on_error='stop', max_parallel=1)
        engine = make_engine(fail={'a'})

        report = _operator(scenario, engine).deploy('1', service='top')

        assert engine.names('apply') == ['a']
        assert report.failed == ['a']
        assert report.skipped == ['b', 'c', 'top']

    def test_continue_mode_runs_siblings(self, tmp_path, make_engine):
        scenario = _wide_scenario(tmp_path, on_error='continue', max_parallel=1)
        engine = make_engine(fail={'a'})

        report = _operator(scenario, engine).deploy('1', service='top')

        assert sorted(engine.names('apply')) == ['a', 'b', 'c']
        assert report.applied == ['b', 'c']
        assert report.skipped == ['top']

    def test_batch_runs_in_parallel(self, tmp_path, make_engine):
        scenario = _wide_scenario(tmp_path, max_parallel=3)
        barrier = threading.Barrier(3, timeout=5)

        def wait_for_siblings(op, name):
            if name in ('a', 'b', 'c'):
                barrier.wait()

        engine = make_engine(on_call=wait_for_siblings)
        report = _operator(scenario, engine).deploy('1', service='top')
        assert report.success

    def test_ledger_unwritable_fails_before_apply(self, scenario, seed_stable, fake_engine, monkeypatch):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')

        def refuse():
            raise LedgerError('read-only')

        monkeypatch.setattr(ledger, 'check_writable', refuse)
        with pytest.raises(LedgerError):
            _operator(scenario, fake_engine).deploy('123', service='api')
        assert fake_engine.calls == []


class TestCancellation:
    """Tests for cancel token handling."""

    def test_cancelled_before_start(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        cancel = CancelToken()
        cancel.cancel()

        report = _operator(scenario, fake_engine, cancel=cancel).deploy('123', service='api')

        assert fake_engine.calls == []
        assert report.skipped == ['api', 'networking']
        assert report.nodes['networking'].error == 'cancelled'

    def test_cancel_during_batch(self, scenario, seed_stable, make_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        cancel = CancelToken()

        def cancel_after_networking(op, name):
            cancel.cancel()

        engine = make_engine(fail={'networking'}, on_call=cancel_after_networking)
        report = _operator(scenario, engine, cancel=cancel).deploy('123', service='api')

        assert report.nodes['networking'].status == 'failed'
        assert 'E302' in report.nodes['networking'].error
        assert report.nodes['api'].status == 'skipped'


class TestStateLocking:
    """Tests for state-key locks around engine runs."""

    def test_same_state_key_never_overlaps(self, scenario, make_engine):
        guard = threading.Lock()
        active = [0]
        peak = [0]

        def track(op, name):
            with guard:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.2)
            with guard:
                active[0] -= 1

        engine = make_engine(on_call=track)
        reports = []

        def run():
            reports.append(_operator(scenario, engine).deploy('7', service='networking'))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert [r.success for r in reports] == [True, True]
        assert engine.names('apply') == ['networking', 'networking']
        assert peak[0] == 1

    def test_lock_wait_honours_deadline(self, scenario, fake_engine):
        config, _, _ = scenario
        held = StateLocks(config.state_dir)
        operator = _operator(scenario, fake_engine, cancel=CancelToken(timeout=1.0))

        started = time.monotonic()
        with held.hold('state:ephemeral/myapp-7/networking/terraform.tfstate'):
            report = operator.deploy('7', service='networking')
        elapsed = time.monotonic() - started

        assert elapsed < 5
        assert report.nodes['networking'].status == 'failed'
        assert 'E302' in report.nodes['networking'].error
        assert fake_engine.calls == []

    def test_lock_wait_honours_cancel(self, scenario, fake_engine):
        config, catalog, ledger = scenario
        held = StateLocks(config.state_dir)
        cancel = CancelToken()
        operator = _operator(scenario, fake_engine, cancel=cancel)

        with held.hold(f'dir:{catalog.lookup("networking").directory}'):
            threading.Timer(1.0, cancel.cancel).start()
            report = operator.deploy('7', service='networking')

        assert report.nodes['networking'].status == 'failed'
        assert fake_engine.calls == []
        assert ledger.get(('7', 'networking')).status == 'failed'


class TestDryRun:
    """Tests for dry-run (preview) mode."""

    def test_no_engine_no_ledger(self, scenario, seed_stable, fake_engine, capsys):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        before = [e.to_dict() for e in ledger.list()]

        report = _operator(scenario, fake_engine, dry_run=True).deploy('123', service='api')

        assert fake_engine.calls == []
        assert [e.to_dict() for e in ledger.list()] == before
        assert report.plan.batches == [['networking'], ['api']]
        assert report.nodes['api'].status == 'planned'
        captured = capsys.readouterr()
        assert 'DRY-RUN DEPLOY' in captured.out
        assert 'ephemeral/myapp-123/api/terraform.tfstate' in captured.out

    def test_reports_unresolved_branch(self, scenario, fake_engine, capsys):
        report = _operator(scenario, fake_engine, dry_run=True).deploy('123', service='api')

        assert fake_engine.calls == []
        assert report.plan.batches == [['networking']]
        assert report.nodes['database'].status == 'unresolved'
        assert report.nodes['api'].status == 'blocked'
        assert report.nodes['networking'].status == 'planned'
        assert 'unresolved' in capsys.readouterr().out

    def test_destroy_dry_run(self, scenario, seed_stable, fake_engine, capsys):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        _operator(scenario, fake_engine).deploy('123', service='api')
        fake_engine.calls.clear()

        report = _operator(scenario, fake_engine, dry_run=True).destroy('123')

        assert fake_engine.calls == []
        assert report.plan.batches == [['api'], ['networking']]
        assert ledger.get(('123', 'api')).status == 'applied'
        assert 'DRY-RUN DESTROY' in capsys.readouterr().out


class TestDestroy:
    """Tests for merge request teardown."""

    def test_reverse_order_never_stable(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database', outputs={'url': 'db'})
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')
        fake_engine.calls.clear()

        report = operator.destroy('123')

        assert report.success
        assert fake_engine.names('destroy') == ['api', 'networking']
        assert report.destroyed == ['api', 'networking']
        assert 'database' not in report.nodes
        assert ledger.get(('123', 'api')).status == 'destroyed'
        assert ledger.get(('123', 'database')).status == 'applied'
        assert ledger.get((stable_scope('sandbox'), 'database')).status == 'applied'

    def test_destroy_inputs_from_ledger(self, scenario, seed_stable, make_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database', outputs={'url': 'db'})
        engine = make_engine(outputs={'networking': {'vpc_id': 'vpc-1'}})
        operator = _operator(scenario, engine)
        operator.deploy('123', service='api')

        operator.destroy('123')
        api_inputs = [c[3] for c in engine.calls if c[:2] == ('destroy', 'api')][0]
        assert api_inputs == {'networking_vpc_id': 'vpc-1', 'database_url': 'db'}

    def test_failed_dependent_keeps_dependency(self, scenario, seed_stable, make_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        _operator(scenario, make_engine()).deploy('123', service='api')

        engine = make_engine(fail={'api'})
        report = _operator(scenario, engine).destroy('123')

        assert not report.success
        assert engine.names('destroy') == ['api']
        assert report.skipped == ['networking']
        assert ledger.get(('123', 'networking')).status == 'applied'

    def test_nothing_recorded(self, scenario, fake_engine):
        report = _operator(scenario, fake_engine).destroy('999')
        assert report.success
        assert report.nodes == {}
        assert fake_engine.calls == []

    def test_destroy_is_rerunnable(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')
        operator.destroy('123')
        fake_engine.calls.clear()

        report = operator.destroy('123')
        assert report.success
        assert fake_engine.calls == []


class TestStableLifecycle:
    """Tests for stable environment deploy and destroy."""

    def test_deploy_stable(self, scenario, fake_engine):
        _, _, ledger = scenario
        report = _operator(scenario, fake_engine).deploy_stable('sandbox', service='database')

        assert report.scope == 'stable.sandbox'
        assert fake_engine.names('apply') == ['networking', 'database']
        entry = ledger.get(('stable.sandbox', 'database'))
        assert entry.kind == 'stable'
        assert entry.status == 'applied'
        assert entry.state_key == 'stable/sandbox/database/terraform.tfstate'

    def test_mr_binds_after_stable_deploy(self, scenario, fake_engine):
        operator = _operator(scenario, fake_engine)
        operator.deploy_stable('sandbox', service='database')
        fake_engine.calls.clear()

        report = operator.deploy('123', service='api')
        assert report.success
        assert fake_engine.names('apply') == ['networking', 'api']

    def test_destroy_stable_refused_while_bound(self, scenario, fake_engine):
        operator = _operator(scenario, fake_engine)
        operator.deploy_stable('sandbox', service='database')
        operator.deploy('123', service='api')

        with pytest.raises(StableInUseError) as exc_info:
            operator.destroy_stable('sandbox')
        assert exc_info.value.merge_requests == ['123']

    def test_destroy_stable_after_mr_destroy(self, scenario, fake_engine):
        operator = _operator(scenario, fake_engine)
        operator.deploy_stable('sandbox', service='database')
        operator.deploy('123', service='api')
        operator.destroy('123')
        fake_engine.calls.clear()

        report = operator.destroy_stable('sandbox')
        assert report.success
        assert fake_engine.names('destroy') == ['database', 'networking']

    def test_destroy_stable_force(self, scenario, fake_engine):
        operator = _operator(scenario, fake_engine)
        operator.deploy_stable('sandbox', service='database')
        operator.deploy('123', service='api')

        report = operator.destroy_stable('sandbox', force=True)
        assert report.destroyed == ['database', 'networking']


class TestRebinding:
    """Tests for switching a dependency from ephemeral to stable within one MR."""

    def test_live_ephemeral_not_rebound(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        operator = _operator(scenario, fake_engine,
                             overrides={'database': DependencyPolicy.parse('ephemeral')})
        assert operator.deploy('1', service='api').success
        seed_stable(ledger, 'database')
        fake_engine.calls.clear()

        with pytest.raises(LiveEphemeralError) as exc_info:
            _operator(scenario, fake_engine).deploy('1', service='api')

        assert exc_info.value.code == 'E107'
        assert exc_info.value.service == 'database'
        assert fake_engine.calls == []
        entry = ledger.get(('1', 'database'))
        assert entry.kind == 'ephemeral'
        assert entry.status == 'applied'

    def test_refused_in_dry_run(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        _operator(scenario, fake_engine,
                  overrides={'database': DependencyPolicy.parse('ephemeral')}).deploy('1', service='api')
        seed_stable(ledger, 'database')

        with pytest.raises(LiveEphemeralError):
            _operator(scenario, fake_engine, dry_run=True).deploy('1', service='api')

    def test_destroy_still_reaches_ephemeral(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        _operator(scenario, fake_engine,
                  overrides={'database': DependencyPolicy.parse('ephemeral')}).deploy('1', service='api')
        seed_stable(ledger, 'database')
        with pytest.raises(LiveEphemeralError):
            _operator(scenario, fake_engine).deploy('1', service='api')
        fake_engine.calls.clear()

        report = _operator(scenario, fake_engine).destroy('1')

        assert report.success
        assert fake_engine.names('destroy') == ['api', 'database', 'networking']

    def test_rebind_after_destroy(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        _operator(scenario, fake_engine,
                  overrides={'database': DependencyPolicy.parse('ephemeral')}).deploy('1', service='api')
        _operator(scenario, fake_engine).destroy('1')
        seed_stable(ledger, 'database')

        report = _operator(scenario, fake_engine).deploy('1', service='api')

        assert report.success
        assert report.nodes['database'].status == 'bound'
        assert ledger.get(('1', 'database')).kind == 'stable'


class TestEnvListAndPrune:
    """Tests for ledger views."""

    def test_env_list(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')

        assert [e.service_name for e in operator.env_list('123')] == ['api', 'database', 'networking']
        assert len(operator.env_list()) == 4

    def test_prune_refuses_live(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')
        with pytest.raises(Exception, match='still has live entries'):
            operator.prune('123')

    def test_prune_after_destroy(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        operator = _operator(scenario, fake_engine)
        operator.deploy('123', service='api')
        operator.destroy('123')

        assert operator.prune('123') == ['api', 'database', 'networking']
        assert ledger.list('123') == []
        assert ledger.get((stable_scope('sandbox'), 'database')) is not None


class TestHelpers:
    """Tests for input composition and outcome serialization."""

    def test_compose_inputs(self):
        resolved = {
            'api': ResolvedEnvironment('api', MixingPolicy.EPHEMERAL, 'k1', '/x', dependencies=['db', 'net']),
            'db': ResolvedEnvironment('db', MixingPolicy.STABLE, 'k2', '/y', outputs={'url': 'u', 'port': 5432}),
            'net': ResolvedEnvironment('net', MixingPolicy.EPHEMERAL, 'k3', '/z', outputs={'id': 'n'}),
        }
        assert compose_inputs(resolved['api'], resolved) == {'db_port': 5432, 'db_url': 'u', 'net_id': 'n'}

    def test_outcome_to_dict(self):
        outcome = NodeOutcome(name='api', status='applied', state_key='k', batch=1, duration=1.234)
        assert outcome.to_dict() == {
            'name': 'api', 'status': 'applied', 'kind': 'ephemeral',
            'state_key': 'k', 'batch': 1, 'duration': 1.23,
        }

    def test_report_to_dict(self, scenario, seed_stable, fake_engine):
        _, _, ledger = scenario
        seed_stable(ledger, 'database')
        report = _operator(scenario, fake_engine).deploy('123', service='api')
        data = report.to_dict()

        assert data['success'] is True
        assert data['batches'] == [['networking'], ['api']]
        assert data['root'] == 'api'
        assert [n['name'] for n in data['nodes']] == ['api', 'database', 'networking']
        assert data['duration_seconds'] >= 0
