"""
告警评估

每个 (rule, host) 一个越限窗口跟踪器：
- 条件成立且没有窗口：以样本时间开启窗口，创建 PENDING 告警
- 条件成立且窗口已持续 ≥ sustained_duration：进入 FIRING，只在进入时通知一次
- 条件不成立：关闭窗口；FIRING / ACKNOWLEDGED 的告警转为 RESOLVED 并发送恢复通知
- 缺失样本不会自动恢复告警，只记录评估间隔日志

同一 (rule, host) 的状态迁移由该键上的锁串行化；规则定义有读缓存，修改时失效。
"""

import asyncio
import threading
import time
from collections import defaultdict
from typing import Optional

from core.errors import AlertEvaluationGap, AlertNotFound, InvalidTransition, RuleNotFound
from core.logger import bind_context, get_logger
from models.alert import Alert, AlertEvent, AlertEventKind, AlertRule, AlertState, MetricSample

_logger = get_logger("services.alerts")

RULES_FILE = "alert_rules.json"
ALERTS_KIND = "alerts"


class AlertRuleStore:
    """告警规则（alert_rules.json），读多写少，带缓存"""

    def __init__(self, storage):
        self._storage = storage
        self._lock = threading.Lock()
        self._cache: Optional[dict[str, AlertRule]] = None

    def invalidate(self):
        with self._lock:
            self._cache = None

    def _rules(self) -> dict[str, AlertRule]:
        with self._lock:
            if self._cache is None:
                raw = self._storage.read(RULES_FILE, {}) or {}
                cache = {}
                for rule_id, data in raw.items():
                    try:
                        cache[rule_id] = AlertRule.model_validate({**data, "rule_id": rule_id})
                    except ValueError as e:
                        _logger.error(f"告警规则格式错误 [{rule_id}]: {e}")
                self._cache = cache
            return self._cache

    def all(self) -> list[AlertRule]:
        return list(self._rules().values())

    def find(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules().get(rule_id)

    def get(self, rule_id: str) -> AlertRule:
        rule = self.find(rule_id)
        if rule is None:
            raise RuleNotFound(f"告警规则不存在: {rule_id}")
        return rule

    def upsert(self, rule: AlertRule) -> AlertRule:
        def updater(rules):
            rules[rule.rule_id] = rule.model_dump(mode="json", exclude={"rule_id"})
            return rules
        self._storage.update(RULES_FILE, updater, default={})
        self.invalidate()
        return rule

    def remove(self, rule_id: str) -> AlertRule:
        rule = self.get(rule_id)

        def updater(rules):
            rules.pop(rule_id, None)
            return rules
        self._storage.update(RULES_FILE, updater, default={})
        self.invalidate()
        return rule


class _Tracker:
    """(rule, host) 的越限窗口"""

    __slots__ = ("window_start", "alert", "last_sample_at", "gap_logged")

    def __init__(self):
        self.window_start: Optional[float] = None
        self.alert: Optional[Alert] = None
        self.last_sample_at: Optional[float] = None
        self.gap_logged = False


class AlertEvaluator:
    """指标样本 → 告警状态机 → 通知"""

    def __init__(
        self,
        rules: AlertRuleStore,
        notifier,
        storage=None,
        inventory=None,
        gap_after: float = 180,
        gap_check_interval: float = 60,
    ):
        self._rules = rules
        self._notifier = notifier
        self._storage = storage
        self._inventory = inventory
        self._gap_after = gap_after
        self._gap_check_interval = gap_check_interval

        self._trackers: dict[tuple[str, str], _Tracker] = {}
        self._alerts: dict[str, Alert] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

        self._running = False
        self._gap_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, rules: AlertRuleStore, notifier, storage=None,
                    inventory=None) -> "AlertEvaluator":
        return cls(
            rules,
            notifier,
            storage=storage,
            inventory=inventory,
            gap_after=config.get("alerts.gap_after", 180),
            gap_check_interval=config.get("alerts.gap_check_interval", 60),
        )

    @property
    def rules(self) -> AlertRuleStore:
        return self._rules

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            return self._key_locks[key]

    # ──────────────────────────────────────────
    # 样本评估
    # ──────────────────────────────────────────

    def _targets(self, rule: AlertRule, host_id: str) -> bool:
        if rule.host_ids:
            return host_id in rule.host_ids
        if self._inventory is None:
            return True
        return self._inventory.is_online(host_id)

    def _candidates(self, sample: MetricSample) -> list[AlertRule]:
        if sample.rule_id:
            rule = self._rules.find(sample.rule_id)
            if rule is None or not rule.enabled:
                _logger.debug(f"样本对应的规则不存在或已停用: {sample.rule_id}")
                return []
            if rule.metric != sample.metric:
                _logger.warning(f"样本指标 {sample.metric} 与规则 {rule.rule_id} 的指标 {rule.metric} 不一致，忽略")
                return []
            return [rule] if self._targets(rule, sample.host_id) else []
        return [r for r in self._rules.all()
                if r.enabled and r.metric == sample.metric and self._targets(r, sample.host_id)]

    def ingest(self, sample: MetricSample) -> list[AlertEvent]:
        """
        评估一个样本，返回本次产生的通知事件（已交给通知分发器）。
        单条规则评估出错只记录日志，不影响其它规则。
        """
        events: list[tuple[AlertRule, AlertEvent]] = []
        for rule in self._candidates(sample):
            with bind_context(host_id=sample.host_id):
                try:
                    event = self._evaluate(rule, sample)
                except Exception as e:
                    _logger.exception(f"告警规则评估异常 [{rule.rule_id}]: {e}")
                    continue
            if event is not None:
                events.append((rule, event))

        for rule, event in events:
            self._dispatch(rule, event)
        return [event for _, event in events]

    def _evaluate(self, rule: AlertRule, sample: MetricSample) -> Optional[AlertEvent]:
        key = (rule.rule_id, sample.host_id)
        ts = sample.timestamp
        with self._lock_for(key):
            tracker = self._trackers.get(key)
            if tracker is None:
                tracker = self._trackers[key] = _Tracker()

            if tracker.last_sample_at is not None and ts < tracker.last_sample_at:
                _logger.debug(f"忽略乱序样本 [{rule.rule_id}] ts={ts}")
                return None
            tracker.last_sample_at = ts
            tracker.gap_logged = False

            if rule.matches(sample.value):
                if tracker.window_start is None:
                    tracker.window_start = ts
                    tracker.alert = Alert(
                        rule_id=rule.rule_id,
                        host_id=sample.host_id,
                        level=rule.level,
                        current_value=sample.value,
                        first_breach_at=ts,
                        message=self._message(rule, sample),
                    )
                    self._register(tracker.alert)
                alert = tracker.alert
                alert.current_value = sample.value
                if alert.state == AlertState.PENDING and ts - tracker.window_start >= rule.sustained_duration:
                    alert.state = AlertState.FIRING
                    alert.fired_at = ts
                    alert.message = self._message(rule, sample)
                    self._persist(alert)
                    _logger.warning(f"触发告警: {rule.name or rule.rule_id} - {sample.host_id} = {sample.value}")
                    return self._event(AlertEventKind.FIRING, rule, alert)
                return None

            if tracker.window_start is None:
                return None
            alert = tracker.alert
            tracker.window_start = None
            tracker.alert = None
            if alert is None:
                return None
            previous = alert.state
            self._resolve(alert, ts, sample.value)
            if previous in (AlertState.FIRING, AlertState.ACKNOWLEDGED):
                _logger.info(f"告警恢复: {rule.name or rule.rule_id} - {sample.host_id} = {sample.value}")
                return self._event(AlertEventKind.RESOLVED, rule, alert)
            return None

    def _resolve(self, alert: Alert, ts: float, value: Optional[float] = None):
        alert.state = AlertState.RESOLVED
        alert.resolved_at = ts
        if value is not None:
            alert.current_value = value
        self._persist(alert)

    @staticmethod
    def _message(rule: AlertRule, sample: MetricSample) -> str:
        return (
            f"{rule.name or rule.rule_id}: 主机 {sample.host_id} {sample.metric}={sample.value:.2f} "
            f"{rule.operator.symbol} {rule.threshold}"
        )

    @staticmethod
    def _event(kind: AlertEventKind, rule: AlertRule, alert: Alert) -> AlertEvent:
        return AlertEvent(
            kind=kind,
            alert=alert.model_copy(),
            rule_name=rule.name,
            metric=rule.metric,
            operator=rule.operator,
            threshold=rule.threshold,
        )

    def _dispatch(self, rule: AlertRule, event: AlertEvent):
        try:
            self._notifier.notify(rule.channel_ids, event)
        except Exception as e:
            _logger.error(f"发送告警通知失败: {e}")

    # ──────────────────────────────────────────
    # 确认 / 规则变更
    # ──────────────────────────────────────────

    def acknowledge(self, alert_id: str, user: str = "admin") -> Alert:
        """
        FIRING → ACKNOWLEDGED，不清除越限窗口。

        Raises:
            AlertNotFound / InvalidTransition
        """
        alert = self.get_alert(alert_id)
        with self._lock_for((alert.rule_id, alert.host_id)):
            if alert.state != AlertState.FIRING:
                raise InvalidTransition(f"告警 {alert_id} 状态为 {alert.state.value}，只能确认 FIRING 告警")
            alert.state = AlertState.ACKNOWLEDGED
            alert.acknowledged_at = time.time()
            alert.acknowledged_by = user
            self._persist(alert)
        _logger.info(f"告警已确认: {alert_id} by {user}")
        return alert

    def upsert_rule(self, rule: AlertRule) -> AlertRule:
        self._rules.upsert(rule)
        if not rule.enabled:
            self._retire_rule(rule, "规则已停用")
        _logger.info(f"告警规则已保存: {rule.rule_id} ({rule.metric} {rule.operator.symbol} {rule.threshold})")
        return rule

    def remove_rule(self, rule_id: str) -> AlertRule:
        rule = self._rules.remove(rule_id)
        self._retire_rule(rule, "规则已删除")
        _logger.info(f"告警规则已删除: {rule_id}")
        return rule

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AlertRule:
        rule = self._rules.get(rule_id).model_copy(update={"enabled": enabled})
        return self.upsert_rule(rule)

    def _retire_rule(self, rule: AlertRule, reason: str):
        """规则停用或删除：关闭其全部窗口，活动告警自动恢复并通知"""
        events = []
        for key in [k for k in list(self._trackers) if k[0] == rule.rule_id]:
            with self._lock_for(key):
                tracker = self._trackers.pop(key, None)
                if tracker is None or tracker.alert is None:
                    continue
                alert = tracker.alert
                previous = alert.state
                alert.message = f"{alert.message}（{reason}）"
                self._resolve(alert, time.time())
                if previous in (AlertState.FIRING, AlertState.ACKNOWLEDGED):
                    events.append(self._event(AlertEventKind.RESOLVED, rule, alert))
        for event in events:
            self._dispatch(rule, event)
        if events:
            _logger.info(f"{reason}，自动恢复 {len(events)} 条告警: {rule.rule_id}")

    # ──────────────────────────────────────────
    # 评估间隔检查
    # ──────────────────────────────────────────

    def check_gaps(self, now: Optional[float] = None) -> list[tuple[str, str]]:
        """记录长时间没有样本的 (rule, host)；不改变任何告警状态"""
        now = now or time.time()
        gaps = []
        for key, tracker in list(self._trackers.items()):
            if tracker.last_sample_at is None or tracker.gap_logged:
                continue
            silence = now - tracker.last_sample_at
            if silence > self._gap_after:
                tracker.gap_logged = True
                gaps.append(key)
                gap = AlertEvaluationGap(f"规则 {key[0]} 主机 {key[1]} 已 {silence:.0f} 秒没有样本")
                _logger.warning(f"评估间隔: {gap.message}")
        return gaps

    async def start(self):
        self._running = True
        self._gap_task = asyncio.create_task(self._gap_loop())

    async def stop(self):
        self._running = False
        if self._gap_task:
            self._gap_task.cancel()
            try:
                await self._gap_task
            except asyncio.CancelledError:
                pass
        self._gap_task = None

    async def _gap_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self._gap_check_interval)
                self.check_gaps()
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.error(f"评估间隔检查异常: {e}")
                await asyncio.sleep(self._gap_check_interval)

    # ──────────────────────────────────────────
    # 查询 / 持久化
    # ──────────────────────────────────────────

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"告警不存在: {alert_id}")
        return alert

    def list_alerts(self, state: Optional[AlertState] = None, active_only: bool = False,
                    host_id: Optional[str] = None, limit: int = 100) -> list[Alert]:
        result = [
            a for a in self._alerts.values()
            if (state is None or a.state == state)
            and (not active_only or a.state.is_active)
            and (host_id is None or a.host_id == host_id)
        ]
        result.sort(key=lambda a: a.first_breach_at, reverse=True)
        return result[:limit]

    def active_alert(self, rule_id: str, host_id: str) -> Optional[Alert]:
        tracker = self._trackers.get((rule_id, host_id))
        return tracker.alert if tracker else None

    def _register(self, alert: Alert):
        self._alerts[alert.alert_id] = alert
        self._persist(alert)

    def _persist(self, alert: Alert):
        if self._storage is not None:
            self._storage.save_record(ALERTS_KIND, alert.alert_id, alert.model_dump(mode="json"))

    def load(self, limit: int = 1000) -> int:
        """从存储恢复告警；未恢复的告警重新挂回跟踪器，窗口从首次越限时间算起"""
        if self._storage is None:
            return 0
        restored = 0
        for data in self._storage.list_records(ALERTS_KIND, limit=limit, sort_key="first_breach_at"):
            try:
                alert = Alert.model_validate(data)
            except ValueError as e:
                _logger.warning(f"告警记录格式错误: {e}")
                continue
            self._alerts[alert.alert_id] = alert
            key = (alert.rule_id, alert.host_id)
            if alert.state.is_active and key not in self._trackers:
                tracker = self._trackers[key] = _Tracker()
                tracker.window_start = alert.first_breach_at
                tracker.alert = alert
                restored += 1
        _logger.info(f"已加载告警 {len(self._alerts)} 条，其中活动 {restored} 条")
        return len(self._alerts)
