import pytest

from core.errors import AlertNotFound, InvalidTransition, RuleNotFound
from models.alert import AlertRule, AlertState, MetricSample, Operator
from services.alerts import AlertEvaluator, AlertRuleStore
from services.storage import FileStore

from fakes import MemoryInventory, RecordingNotifier


def _evaluator(tmp_path, *rules, inventory=None, **kwargs):
    storage = FileStore(str(tmp_path / "data"))
    store = AlertRuleStore(storage)
    for rule in rules:
        store.upsert(rule)
    notifier = RecordingNotifier()
    return AlertEvaluator(store, notifier, storage=storage, inventory=inventory, **kwargs), notifier, storage


def _cpu_rule(**kwargs):
    kwargs.setdefault("sustained_duration", 60)
    return AlertRule(rule_id="cpu-high", name="CPU 过高", metric="cpu", operator=Operator.GT,
                     threshold=90, host_ids=["web-1"], channel_ids=["ops"], **kwargs)


def _cpu(value, ts, host="web-1"):
    return MetricSample(host_id=host, metric="cpu", value=value, timestamp=ts)


def test_fires_once_after_sustained_breach_then_resolves(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule())

    assert evaluator.ingest(_cpu(95, 0)) == []
    alert = evaluator.active_alert("cpu-high", "web-1")
    assert alert.state == AlertState.PENDING

    assert evaluator.ingest(_cpu(96, 30)) == []
    fired = evaluator.ingest(_cpu(97, 60))
    assert [e.kind.value for e in fired] == ["firing"]
    assert alert.state == AlertState.FIRING
    assert alert.fired_at == 60

    assert evaluator.ingest(_cpu(99, 90)) == []
    resolved = evaluator.ingest(_cpu(40, 120))
    assert [e.kind.value for e in resolved] == ["resolved"]
    assert alert.state == AlertState.RESOLVED
    assert alert.resolved_at == 120

    assert notifier.kinds == ["firing", "resolved"]
    assert notifier.events[0][0] == ["ops"]
    assert evaluator.active_alert("cpu-high", "web-1") is None


def test_clearing_restarts_the_window(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule())

    evaluator.ingest(_cpu(95, 0))
    first = evaluator.active_alert("cpu-high", "web-1")
    evaluator.ingest(_cpu(50, 30))
    # PENDING 告警静默恢复
    assert first.state == AlertState.RESOLVED
    assert notifier.events == []

    evaluator.ingest(_cpu(95, 40))
    second = evaluator.active_alert("cpu-high", "web-1")
    assert second.alert_id != first.alert_id
    assert evaluator.ingest(_cpu(95, 90)) == []
    assert [e.kind.value for e in evaluator.ingest(_cpu(95, 100))] == ["firing"]


def test_zero_duration_fires_immediately(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule(sustained_duration=0))
    events = evaluator.ingest(_cpu(91, 10))
    assert [e.kind.value for e in events] == ["firing"]
    assert evaluator.ingest(_cpu(90, 11))[0].kind.value == "resolved"


def test_out_of_order_sample_is_ignored(tmp_path):
    evaluator, _, _ = _evaluator(tmp_path, _cpu_rule())
    evaluator.ingest(_cpu(95, 100))
    evaluator.ingest(_cpu(10, 50))
    assert evaluator.active_alert("cpu-high", "web-1").state == AlertState.PENDING


def test_acknowledge_keeps_window_open(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule(sustained_duration=0))
    evaluator.ingest(_cpu(95, 0))
    alert = evaluator.active_alert("cpu-high", "web-1")

    acked = evaluator.acknowledge(alert.alert_id, user="alice")
    assert acked.state == AlertState.ACKNOWLEDGED
    assert acked.acknowledged_by == "alice"
    with pytest.raises(InvalidTransition):
        evaluator.acknowledge(alert.alert_id)

    # 仍在越限：不会再次触发
    assert evaluator.ingest(_cpu(99, 10)) == []
    assert evaluator.ingest(_cpu(10, 20))[0].kind.value == "resolved"
    assert notifier.kinds == ["firing", "resolved"]


def test_acknowledge_requires_firing(tmp_path):
    evaluator, _, _ = _evaluator(tmp_path, _cpu_rule())
    evaluator.ingest(_cpu(95, 0))
    pending = evaluator.active_alert("cpu-high", "web-1")
    with pytest.raises(InvalidTransition):
        evaluator.acknowledge(pending.alert_id)
    with pytest.raises(AlertNotFound):
        evaluator.acknowledge("alert-missing")


def test_disabling_rule_resolves_active_alerts(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule(sustained_duration=0))
    evaluator.ingest(_cpu(95, 0))
    alert = evaluator.active_alert("cpu-high", "web-1")

    evaluator.set_rule_enabled("cpu-high", False)
    assert alert.state == AlertState.RESOLVED
    assert notifier.kinds == ["firing", "resolved"]
    # 停用后样本不再评估
    assert evaluator.ingest(_cpu(99, 10)) == []
    assert evaluator.list_alerts(active_only=True) == []


def test_removing_rule(tmp_path):
    evaluator, _, _ = _evaluator(tmp_path, _cpu_rule())
    evaluator.remove_rule("cpu-high")
    with pytest.raises(RuleNotFound):
        evaluator.rules.get("cpu-high")
    with pytest.raises(RuleNotFound):
        evaluator.remove_rule("cpu-high")


def test_missing_samples_only_log_gap(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule(sustained_duration=0), gap_after=180)
    evaluator.ingest(_cpu(95, 1000))

    assert evaluator.check_gaps(now=1100) == []
    assert evaluator.check_gaps(now=1200) == [("cpu-high", "web-1")]
    assert evaluator.check_gaps(now=1300) == []
    assert evaluator.active_alert("cpu-high", "web-1").state == AlertState.FIRING
    assert notifier.kinds == ["firing"]


def test_rule_without_hosts_targets_online_inventory(tmp_path):
    rule = AlertRule(rule_id="disk-full", metric="disk", operator=Operator.GTE, threshold=95)
    inventory = MemoryInventory("web-1", "web-2")
    inventory.online.discard("web-2")
    evaluator, _, _ = _evaluator(tmp_path, rule, inventory=inventory)

    evaluator.ingest(MetricSample(host_id="web-1", metric="disk", value=95, timestamp=1))
    evaluator.ingest(MetricSample(host_id="web-2", metric="disk", value=99, timestamp=1))
    assert evaluator.active_alert("disk-full", "web-1").state == AlertState.FIRING
    assert evaluator.active_alert("disk-full", "web-2") is None


def test_alerts_reload_from_storage(tmp_path):
    evaluator, _, storage = _evaluator(tmp_path, _cpu_rule(sustained_duration=0))
    evaluator.ingest(_cpu(95, 0))
    alert_id = evaluator.active_alert("cpu-high", "web-1").alert_id

    notifier = RecordingNotifier()
    restored = AlertEvaluator(AlertRuleStore(storage), notifier, storage=storage)
    assert restored.load() == 1
    assert restored.get_alert(alert_id).state == AlertState.FIRING

    events = restored.ingest(_cpu(20, 30))
    assert [e.alert.alert_id for e in events] == [alert_id]
    assert notifier.kinds == ["resolved"]


def test_one_minute_samples_with_a_dip(tmp_path):
    rule = AlertRule(rule_id="cpu-80", metric="cpu", operator=Operator.GT, threshold=80,
                     sustained_duration=300, host_ids=["web-1"])
    evaluator, notifier, _ = _evaluator(tmp_path, rule)
    values = [85, 85, 85, 79, 85, 85, 85, 85, 85, 85]

    fired_at, pending = [], []
    for i, value in enumerate(values):
        events = evaluator.ingest(_cpu(value, i * 60))
        if any(e.kind.value == "firing" for e in events):
            fired_at.append(i)
        alert = evaluator.active_alert("cpu-80", "web-1")
        pending.append(alert.alert_id if alert else None)

    # 79 清空窗口：前三个样本的 PENDING 告警静默恢复，新窗口从 t=240 开始
    assert pending[3] is None
    assert pending[0] == pending[2] != pending[4]
    assert evaluator.get_alert(pending[0]).state == AlertState.RESOLVED
    # 新窗口持续满 300 秒（t=540）才触发，只触发一次
    assert fired_at == [9]
    assert notifier.kinds == ["firing"]


def test_rebreach_after_firing_creates_new_alert(tmp_path):
    evaluator, notifier, _ = _evaluator(tmp_path, _cpu_rule())

    evaluator.ingest(_cpu(95, 0))
    evaluator.ingest(_cpu(95, 60))
    first = evaluator.active_alert("cpu-high", "web-1")
    assert first.state == AlertState.FIRING
    evaluator.ingest(_cpu(50, 90))
    assert first.state == AlertState.RESOLVED

    evaluator.ingest(_cpu(95, 120))
    evaluator.ingest(_cpu(95, 180))
    second = evaluator.active_alert("cpu-high", "web-1")
    assert second.alert_id != first.alert_id
    assert second.state == AlertState.FIRING
    assert evaluator.get_alert(first.alert_id).state == AlertState.RESOLVED
    assert evaluator.get_alert(first.alert_id).resolved_at == 90
    assert notifier.kinds == ["firing", "resolved", "firing"]
