import logging
from typing import Any, Dict, List, Optional, Tuple

from config import config
from config.utils import as_bool, as_secret, get_config_section
from ingest.binance_rest import BinanceRESTClient
from ingest.hitbtc_rest import HitBTCRESTClient
from ingest.persister import MemoryStore, PostgresStore
from orchestration.engine import StrategyEngine
from strategy.simulators.paper import PaperAdapter
from strategy.transports.base import AdapterSettings, ExchangeAdapter
from strategy.transports.binance import BinanceAdapter
from strategy.transports.hitbtc import HitBTCAdapter


logger = logging.getLogger(__name__)

EXCHANGE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'binance': {
        'quote_currency': 'USDT',
        'excluded_currencies': ['BNB'],
        'margin_pct': 0.10,
        'candle_period': '1h',
        'stagger_delay_s': 1.0,
        'order_type': 'MARKET',
    },
    'hitbtc': {
        'quote_currency': 'USD',
        'excluded_currencies': [],
        'margin_pct': 0.12,
        'candle_period': 'H1',
        'stagger_delay_s': 0.603,
        'order_type': 'market',
    },
}


def build_store(cfg=None):
    db_cfg = get_config_section(cfg or config, 'database')
    if as_bool(db_cfg.get('enabled'), False):
        return PostgresStore(db_cfg, capacity=_durable_capacity(cfg))
    logger.info("Database disabled; averages and orders are kept in memory")
    return MemoryStore(capacity=_durable_capacity(cfg))


def _durable_capacity(cfg) -> int:
    strategy_cfg = get_config_section(cfg or config, 'strategy')
    return int(strategy_cfg.get('durable_history_capacity', 100))


def build_adapter(name: str, section: Dict[str, Any], candle_limit: int = 100) -> ExchangeAdapter:
    if name not in EXCHANGE_DEFAULTS:
        raise ValueError(f"Unsupported exchange '{name}'")
    settings = AdapterSettings.from_section(name, section, **EXCHANGE_DEFAULTS[name])
    api_key = as_secret(section.get('api_key'))
    api_secret = as_secret(section.get('api_secret'))
    paper = as_bool(section.get('paper'), False) or not (api_key and api_secret)

    if name == 'binance':
        rest = BinanceRESTClient(section.get('base_url'), api_key, api_secret)
        kwargs = {'candle_limit': candle_limit}
        if section.get('ws_url'):
            kwargs['ws_url'] = section['ws_url']
        live: ExchangeAdapter = BinanceAdapter(settings, rest=rest, **kwargs)
    else:
        rest = HitBTCRESTClient(section.get('base_url'), api_key, api_secret)
        kwargs = {'candle_limit': candle_limit}
        if section.get('ws_url'):
            kwargs['ws_url'] = section['ws_url']
        live = HitBTCAdapter(settings, rest=rest, **kwargs)

    if not paper:
        return live
    balances = dict(section.get('paper_balances') or {settings.quote_currency: 1000.0})
    logger.warning("%s runs in paper mode with balances %s", name, balances)
    return PaperAdapter(settings, balances=balances, market=live)


def build_engines(cfg=None, store=None) -> Tuple[List[StrategyEngine], Any]:
    """One engine per enabled exchange, all sharing one store."""
    cfg = cfg or config
    store = store or build_store(cfg)
    strategy_cfg = get_config_section(cfg, 'strategy')
    candle_limit = int(strategy_cfg.get('candle_window', 100))
    exchanges = get_config_section(cfg, 'exchanges')

    engines: List[StrategyEngine] = []
    for name, section in exchanges.items():
        section = dict(section or {})
        if not as_bool(section.get('enabled'), False):
            continue
        symbols: Optional[List[str]] = section.get('symbols')
        if not symbols:
            logger.warning("%s enabled without symbols; skipped", name)
            continue
        adapter = build_adapter(name, section, candle_limit=candle_limit)
        engines.append(StrategyEngine(adapter, store, [str(s).upper() for s in symbols], strategy_cfg))
    return engines, store
