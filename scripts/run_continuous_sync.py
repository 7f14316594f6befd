"""
Scripts - Run Continuous Sync.

============================================================
RESPONSIBILITY
============================================================
Runs a sync session for one contract from the command line.

- Loads .env and optional YAML configuration
- Starts the session and logs every cycle
- Persists state to a database when --database-url is given
- Stops gracefully on SIGINT / SIGTERM

============================================================
USAGE
============================================================
python -m scripts.run_continuous_sync --chain lisk --contract 0x...

Options:
  --once             Run a single cycle and exit
  --max-cycles N     Complete after N cycles
  --abi PATH         Contract ABI (JSON) for function/event names
  --resume           Continue from persisted state
  --database-url     e.g. sqlite+aiosqlite:///sync.db

============================================================
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chain_clients import ChainClientConfig, ChainClientRegistry, Chain
from continuous_sync import (
    CycleReport,
    InMemorySyncStateStore,
    SqlAlchemySyncStateRepository,
    SyncConfig,
    SyncEngineConfig,
    SyncManager,
    SyncStateStore,
    SyncStatus,
)
from interaction_fetcher import FetcherConfig, InteractionFetcher


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

logger = logging.getLogger(__name__)


# ============================================================
# HELPERS
# ============================================================

def load_abi(path: Optional[Path]) -> Optional[Any]:
    """Read an ABI file (plain list or {"abi": [...]})."""
    if path is None:
        return None
    with open(path, "r") as f:
        data = json.load(f)
    return data.get("abi", data) if isinstance(data, dict) else data


async def create_store(database_url: Optional[str]) -> SyncStateStore:
    """State store for the session."""
    if not database_url:
        return InMemorySyncStateStore()

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    engine = create_async_engine(database_url)
    await SqlAlchemySyncStateRepository.create_schema(engine)
    return SqlAlchemySyncStateRepository(async_sessionmaker(engine, expire_on_commit=False))


def on_cycle(report: CycleReport, new_transactions, new_events) -> None:
    for tx in new_transactions:
        logger.debug(f"  tx {tx.hash} block={tx.block_number} fn={tx.function_name} ({tx.interaction_type})")
    for ev in new_events:
        logger.debug(f"  event {ev.event_name} {ev.transaction_hash}:{ev.log_index}")


# ============================================================
# MAIN
# ============================================================

async def run_sync(args: argparse.Namespace) -> int:
    """Run one session until it ends. Returns the process exit code."""
    if args.config:
        client_config = ChainClientConfig.from_yaml(args.config)
        fetcher_config = FetcherConfig.from_yaml(args.config)
        engine_config = SyncEngineConfig.from_yaml(args.config)
    else:
        client_config = ChainClientConfig.from_env()
        fetcher_config = FetcherConfig.from_env()
        engine_config = SyncEngineConfig.from_env()

    if args.interval is not None:
        engine_config.cycle_interval_seconds = args.interval

    config = SyncConfig(
        contract_address=args.contract,
        chain=args.chain,
        base_block_range=args.base_range,
        continuous=not args.once,
        account_id=args.account,
        abi=load_abi(args.abi),
        resume=args.resume,
        max_cycles=args.max_cycles,
    )

    store = await create_store(args.database_url)

    async with ChainClientRegistry(config=client_config) as registry:
        manager = SyncManager(
            fetcher=InteractionFetcher(registry, fetcher_config),
            store=store,
            engine_config=engine_config,
        )
        handle = await manager.start(config, on_cycle=on_cycle)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, manager.get_engine(handle).stop)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                pass

        report = await manager.wait(handle)

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.status == SyncStatus.FAILED else 0


def main() -> None:
    """Main entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Keep a contract's interaction dataset in sync",
    )

    parser.add_argument("--chain", required=True, choices=[c.value for c in Chain], help="Chain name")
    parser.add_argument("--contract", required=True, help="Contract address")
    parser.add_argument("--account", default="default", help="Account id owning the session")
    parser.add_argument("--base-range", type=int, default=1000, help="Look-back of the first cycle")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--max-cycles", type=int, default=None, help="Complete after N cycles")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles")
    parser.add_argument("--abi", type=Path, default=None, help="Contract ABI JSON file")
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy async URL for state persistence")
    parser.add_argument("--resume", action="store_true", help="Resume from persisted state")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args()

    setup_logging(args.log_level)

    try:
        sys.exit(asyncio.run(run_sync(args)))
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
