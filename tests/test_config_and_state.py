#!/usr/bin/env python
"""
Configuration parsing, state snapshots, trade journal and alert sink tests
"""
import sys
sys.path.insert(0, '.')

import asyncio
import json
from pathlib import Path

import pytest

from api.alerts import AlertWebhook
from config.config_loader import Config
from config.settings import (
    AllocationMode,
    CoordinatorSettings,
    DailyResetMode,
    PortfolioRiskSettings,
    RiskSettings,
    ShutdownAction,
    StrategyRole,
    TraderSettings,
    TradingPairConfig,
)
from execution.errors import ValidationError
from execution.types import PositionSide
from orchestration.events import EventKind, Severity, TraderEvent, alert_event, trade_event
from orchestration.journal import TradeJournal, TradeRecord
from orchestration.models import Position, PositionState, ProtectionKind, ProtectiveOrder
from orchestration.persistence import STATE_VERSION, StateStore
from strategy.filters import FilterMode


SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / 'config' / 'config.yaml'


# -- configuration --------------------------------------------------------------


def test_shipped_config_parses_into_settings():
    settings = CoordinatorSettings.from_config(Config(SHIPPED_CONFIG))

    assert settings.total_capital == 10000
    assert settings.allocation_mode is AllocationMode.EQUAL
    assert [p.key for p in settings.pairs] == ['BTCUSDT:4h:primary', 'BTCUSDT:1h:filter', 'ETHUSDT:4h:primary']
    btc_filter = settings.pairs[1]
    assert btc_filter.role is StrategyRole.FILTER
    assert btc_filter.filter == 'rsi'
    assert btc_filter.filter_mode is FilterMode.VETO
    assert [p.symbol for p in settings.primary_pairs] == ['BTCUSDT', 'ETHUSDT']

    assert (settings.leverage, settings.margin_mode) == (3, 'ISOLATED')
    assert settings.risk.drawdown_curve[0] == (5.0, 0.9)
    assert settings.risk.daily_reset is DailyResetMode.UTC_DAY
    assert settings.portfolio.correlation_groups == {'majors': ('BTCUSDT', 'ETHUSDT')}
    assert settings.portfolio.limit_for('majors') == 10.0
    assert settings.trader.warmup_candles == 100
    assert settings.trader.protective_retry.max_attempts == 5
    assert settings.trader.order_retry.max_delay_s == 4.0
    assert settings.trader.shutdown_action is ShutdownAction.LEAVE_PROTECTED
    assert settings.reconciliation.default_stop_pct == 2.0


def test_env_placeholders_are_resolved(monkeypatch):
    monkeypatch.setenv('TRADER_TEST_KEY', 'abc123')
    monkeypatch.delenv('TRADER_MISSING_KEY', raising=False)
    cfg = Config.from_dict({'exchange': {
        'api_key': '${TRADER_TEST_KEY}',
        'api_secret': '${TRADER_MISSING_KEY}',
        'base_url': '${TRADER_MISSING_KEY:-https://testnet.example.test}',
        'symbols': ['${TRADER_TEST_KEY}'],
    }})
    assert cfg.section('exchange').api_key == 'abc123'
    assert cfg.exchange.get('api_secret') == '${TRADER_MISSING_KEY}'
    assert cfg.exchange.base_url == 'https://testnet.example.test'
    assert cfg['exchange']['symbols'] == ['abc123']
    assert cfg.section('absent').get('anything', 7) == 7


def test_missing_config_file_is_an_error(tmp_path):
    with pytest.raises(RuntimeError):
        Config(tmp_path / 'nope.yaml')


def test_config_reload_picks_up_changes(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('trading:\n  total_capital: 500\n')
    cfg = Config(path)
    assert cfg.trading.total_capital == 500
    path.write_text('trading:\n  total_capital: 750\n')
    cfg.reload()
    assert cfg.section('trading').get('total_capital') == 750


def test_settings_defaults_from_empty_config():
    settings = CoordinatorSettings.from_config(Config.from_dict({}))
    assert settings.pairs == ()
    assert settings.trader == TraderSettings()
    assert settings.risk == RiskSettings()
    assert settings.portfolio.max_total_drawdown_pct == 25.0


@pytest.mark.parametrize("factory", [
    lambda: RiskSettings(risk_per_trade_pct=0),
    lambda: RiskSettings(max_drawdown_pct=150),
    lambda: RiskSettings(drawdown_curve=((5.0, 0.5), (10.0, 0.75))),
    lambda: RiskSettings(daily_reset='weekly'),
    lambda: PortfolioRiskSettings(max_concurrent_positions=0),
    lambda: PortfolioRiskSettings(group_limits_pct={'alts': 5.0}),
    lambda: TradingPairConfig(symbol=''),
    lambda: TradingPairConfig(symbol='BTCUSDT', role='filter'),
    lambda: TradingPairConfig(symbol='BTCUSDT', role='hedge'),
    lambda: TraderSettings(candle_window=0),
    lambda: CoordinatorSettings(total_capital=0),
    lambda: CoordinatorSettings(leverage=200),
    lambda: CoordinatorSettings(margin_mode='portfolio'),
    lambda: CoordinatorSettings(pairs=(TradingPairConfig('BTCUSDT'), TradingPairConfig('btcusdt'))),
])
def test_invalid_settings_are_rejected(factory):
    with pytest.raises(ValidationError):
        factory()


def test_drawdown_curve_accepts_mapping_form():
    risk = RiskSettings.from_config({'drawdown_curve': {10: 0.5, 5: 0.8}, 'daily_reset': 'ROLLING_24H'})
    assert risk.drawdown_curve == ((5.0, 0.8), (10.0, 0.5))
    assert risk.daily_reset is DailyResetMode.ROLLING_24H


def test_plain_list_correlation_groups_use_default_limit():
    portfolio = PortfolioRiskSettings.from_config({
        'max_correlated_risk_pct': 8,
        'correlation_groups': {'l1': ['solusdt', 'avaxusdt']},
    })
    assert portfolio.correlation_groups == {'l1': ('SOLUSDT', 'AVAXUSDT')}
    assert portfolio.limit_for('l1') == 8.0


# -- state snapshots ------------------------------------------------------------


def _protected_position():
    position = Position('BTCUSDT', PositionSide.LONG, 0.75, 40000.0, stop_loss=39000.0, take_profit=43000.0,
                        initial_quantity=1.0, position_id='p1', revision=2, realized_pnl=120.5)
    position.status = PositionState.PARTIALLY_CLOSED
    position.protection.stop = ProtectiveOrder(ProtectionKind.STOP, '11', 0.75, 39000.0, 'sl-p1-2')
    position.protection.take_profit = ProtectiveOrder(ProtectionKind.TAKE_PROFIT, '12', 0.75, 43000.0, 'tp-p1-2')
    return position


def test_snapshot_survives_restart(tmp_path):
    path = tmp_path / 'state' / 'trader.json'
    store = StateStore(path)
    store.save_symbol('BTCUSDT', _protected_position(), 10120.5)
    store.save_symbol('ETHUSDT', None, 5000.0)

    states = StateStore(path).load()

    restored = states['BTCUSDT'].position
    assert restored.status is PositionState.PARTIALLY_CLOSED
    assert restored.initial_quantity == 1.0
    assert restored.client_order_id(ProtectionKind.STOP) == 'sl-p1-2'
    assert restored.protection.find('tp-p1-2').order_id == '12'
    assert states['BTCUSDT'].equity == 10120.5
    assert states['ETHUSDT'].position is None
    assert json.loads(path.read_text())['version'] == STATE_VERSION


def test_corrupt_snapshot_falls_back_to_backup(tmp_path):
    path = tmp_path / 'trader.json'
    store = StateStore(path)
    store.save_symbol('BTCUSDT', _protected_position(), 10000.0)
    store.save_symbol('ETHUSDT', None, 5000.0)
    assert store.backup_path.exists()
    path.write_text('{"version": 1, "symbols": {')

    states = StateStore(path).load()

    # the backup holds the snapshot before the last write
    assert list(states) == ['BTCUSDT']
    assert states['BTCUSDT'].position.position_id == 'p1'


def test_unreadable_position_is_discarded_but_equity_kept(tmp_path):
    path = tmp_path / 'trader.json'
    path.write_text(json.dumps({
        'version': STATE_VERSION + 1,
        'symbols': {
            'BTCUSDT': {'position': {'symbol': 'BTCUSDT', 'side': 'sideways'}, 'equity': 900.0},
            'ETHUSDT': 'garbage',
        },
    }))
    states = StateStore(path).load()
    assert list(states) == ['BTCUSDT']
    assert states['BTCUSDT'].position is None
    assert states['BTCUSDT'].equity == 900.0


def test_missing_snapshot_loads_empty_and_remove_rewrites(tmp_path):
    store = StateStore(tmp_path / 'trader.json')
    assert store.load() == {}
    store.save_symbol('BTCUSDT', None, 1.0)
    store.remove_symbol('BTCUSDT')
    store.remove_symbol('BTCUSDT')
    assert StateStore(tmp_path / 'trader.json').load() == {}
    assert list(tmp_path.glob('*.tmp')) == []


# -- journal --------------------------------------------------------------------


def _record(**overrides):
    fields = dict(position_id='p1', symbol='BTCUSDT', side='long', entry_price=100.0, exit_price=110.0,
                  quantity=1.0, pnl=10.0, reason='take profit')
    fields.update(overrides)
    return TradeRecord(**fields)


def test_journal_in_memory_keeps_recent_only():
    journal = TradeJournal(recent_limit=2)
    for pnl in (1.0, 2.0, 3.0):
        journal.record(_record(pnl=pnl))
    assert [r.pnl for r in journal.recent] == [2.0, 3.0]
    assert journal.buffer == []


def test_journal_buffer_drops_oldest_when_full():
    journal = TradeJournal({'enabled': True, 'max_buffer': 5})
    for i in range(6):
        journal.record(_record(position_id=f"p{i}"))
    assert [r.position_id for r in journal.buffer] == ['p1', 'p2', 'p3', 'p4', 'p5']


def test_journal_start_stop_without_database():
    async def _run():
        journal = TradeJournal({'enabled': False})
        await journal.start()
        journal.record(_record(pnl=None, exit_price=None, approximate=True))
        await journal.stop()
        assert journal.recent[-1].as_dict()['approximate'] is True

    asyncio.run(_run())


# -- alerts ---------------------------------------------------------------------


@pytest.mark.parametrize("url, enabled", [
    ('', False),
    ('${ALERT_WEBHOOK_URL}', False),
    ('https://hooks.example.test/your-webhook-url', False),
    ('https://hooks.example.test/abc', True),
])
def test_webhook_url_gating(url, enabled):
    sink = AlertWebhook(webhook_url=url)
    assert sink.enabled is enabled


def test_disabled_webhook_logs_instead_of_posting():
    async def _run():
        sink = AlertWebhook(webhook_url='', min_severity='info')
        assert await sink.send_alert('alert', 'stop rejected', 'critical') is False
        sink.notify(alert_event('BTCUSDT', 'stop rejected'))
        await sink.drain()

    asyncio.run(_run())


def test_notify_filters_by_severity():
    async def _run():
        sent = []
        sink = AlertWebhook(webhook_url='', min_severity='error')

        async def record(alert_type, message, severity='warning', metadata=None):
            sent.append((alert_type, severity, metadata['symbol']))
            return True

        sink.send_alert = record
        sink.notify(TraderEvent(EventKind.STATE, 'BTCUSDT', 'paused', Severity.WARNING))
        sink.notify(trade_event('BTCUSDT', 'entered long', pnl=None))
        sink.notify(alert_event('ETHUSDT', 'flatten failed'))
        await sink.drain()
        assert sent == [('trade', 'info', 'BTCUSDT'), ('alert', 'critical', 'ETHUSDT')]

    asyncio.run(_run())


def test_notify_without_loop_does_not_raise():
    sink = AlertWebhook(webhook_url='https://hooks.example.test/abc')
    sink.notify(alert_event('BTCUSDT', 'flatten failed'))
    assert Severity.parse('warning') is Severity.WARNING
