import asyncio

from contract_runner.contracts import ContractWorkspace
from contract_runner.logging_config import get_logger, setup_logging
from contract_runner.settings import get_settings

logger = get_logger("worker")


async def main() -> None:
    # Pre-populate the shared cargo/rustup caches before serving builds.
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    result = await ContractWorkspace(settings).warm_cache()
    logger.info("worker.done", exit_code=result.exit_code)


if __name__ == "__main__":
    asyncio.run(main())
