import asyncio

from core.initialization import initialize_components, load_configuration
from models.metrics import DerivedMetrics, LiquidationOutcome
from utils.logger import setup_logger


async def run_sync() -> None:
    """
    Entrypoint coroutine for the ledger sync engine.

    Loads the configuration, configures a dedicated logger, wires the engine
    and keeps it running until cancelled. Without a signer (``SIGNER_FACTORY``)
    the engine runs read-only: streams and derived metrics only, no
    liquidation monitor and no instruction placement.
    """
    config = load_configuration()

    logger = setup_logger("LedgerSync", config["LOGGING"], to_console=True)

    components = initialize_components(config, logger=logger)
    engine = components["engine"]

    def on_metrics(metrics: DerivedMetrics) -> None:
        logger.debug("metrics update: %s", metrics)

    def on_liquidation(outcome: LiquidationOutcome) -> None:
        logger.info(
            "Liquidation %s for %s (signature=%s, error=%s)",
            outcome.result, outcome.account_id, outcome.signature, outcome.error,
        )

    engine.bus.subscribe("metrics", on_metrics)
    engine.bus.subscribe("liquidation", on_liquidation)

    await engine.run()


def main():
    try:
        asyncio.run(run_sync())
    except KeyboardInterrupt:
        print("👋 Sync engine stopped.")
    except Exception as e:
        print(f"❌ Sync engine terminated due to error: {e}")


if __name__ == "__main__":
    main()
