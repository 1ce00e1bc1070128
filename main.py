import asyncio
import logging
import signal
from typing import List, Optional

import uvicorn

from api import fastapi_server
from api.alerts import AlertWebhook
from api.metrics import start_metrics_server
from config import Config, config
from config.settings import CoordinatorSettings
from execution.binance_gateway import BinanceFuturesGateway
from execution.gateway import ExecutionGateway
from execution.paper import PaperGateway
from ingest.binance_rest import BinanceRESTClient
from ingest.market_data_manager import MarketDataManager
from ingest.websocket_client import UserDataStream
from monitoring.async_utils import cancel_tasks
from monitoring.logging_utils import setup_logging
from orchestration.coordinator import MultiSymbolCoordinator
from orchestration.journal import TradeJournal
from orchestration.persistence import StateStore


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire gateway, market data, persistence, notifier and coordinator."""

    def __init__(self, config_obj: Optional[Config] = None):
        self.config = config_obj or config
        self.exchange_cfg = self.config.section('exchange')
        self.execution_cfg = self.config.section('execution')
        self.monitoring_cfg = self.config.section('monitoring')
        self.api_cfg = self.config.section('api')
        self.settings = CoordinatorSettings.from_config(self.config)

        self.paper_mode = bool(self.exchange_cfg.get('paper', True))
        self.rest = BinanceRESTClient()
        self.gateway: ExecutionGateway = self._build_gateway()
        self.user_stream: Optional[UserDataStream] = None
        if not self.paper_mode:
            self.user_stream = UserDataStream(self.rest, self.gateway.handle_user_event)

        self.market_data = MarketDataManager(rest=self.rest)
        self.state_store = StateStore(self.config.section('state').get('path', 'data/trader_state.json'))
        self.journal = TradeJournal(self.config.section('database').to_dict())
        self.notifier = AlertWebhook()
        self.coordinator = MultiSymbolCoordinator(
            self.settings,
            self.gateway,
            self.market_data,
            state_store=self.state_store,
            journal=self.journal,
            sinks=[self.notifier.notify],
        )
        self._api_server: Optional[uvicorn.Server] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False

    def _build_gateway(self) -> ExecutionGateway:
        if self.paper_mode:
            logger.info("Paper trading mode; orders are simulated")
            return PaperGateway(
                initial_balance=self.settings.total_capital,
                slippage_pct=float(self.execution_cfg.get('paper_slippage_pct', 0.0)),
                fee_rate=self.settings.trader.fee_rate,
            )
        logger.warning("LIVE trading mode (testnet=%s)", bool(self.exchange_cfg.get('testnet', False)))
        return BinanceFuturesGateway(self.rest)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # platforms without loop signal support fall back to KeyboardInterrupt
                pass

    def request_stop(self) -> None:
        logger.info("Stop requested")
        self.coordinator.request_stop()

    async def _serve_api(self) -> None:
        fastapi_server.attach(self.coordinator)
        server_config = uvicorn.Config(
            fastapi_server.app,
            host=self.api_cfg.get('host', '127.0.0.1'),
            port=int(self.api_cfg.get('port', 8080)),
            log_level=str(self.monitoring_cfg.get('log_level', 'info')).lower(),
        )
        self._api_server = uvicorn.Server(server_config)
        # signals are handled by the trading system
        self._api_server.install_signal_handlers = lambda: None
        await self._api_server.serve()

    async def start(self):
        self.running = True
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9100)))
        if isinstance(self.gateway, BinanceFuturesGateway):
            await self.gateway.initialize()
        await self.journal.start()
        if self.user_stream is not None:
            await self.user_stream.start()
        if self.api_cfg.get('enabled', False):
            self._tasks.append(asyncio.create_task(self._serve_api()))
        self._install_signal_handlers()
        await self.coordinator.run()

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.coordinator.stop()
        if self._api_server is not None:
            self._api_server.should_exit = True
        await cancel_tasks(self._tasks)
        self._tasks = []
        if self.user_stream is not None:
            await self.user_stream.stop()
        await self.market_data.close()
        await self.journal.stop()
        await self.notifier.drain()
        await self.gateway.close()


async def main():
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
    finally:
        await system.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
