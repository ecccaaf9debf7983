import argparse
import asyncio
import logging

from config import Settings
from engine.automation_service import AutomationService


def main():
    parser = argparse.ArgumentParser(description="Resume waiting automation enrollments when they are due.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = parser.parse_args()

    settings = Settings.from_env()
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )
    logger = logging.getLogger("automation_engine")

    service = AutomationService(settings)

    async def run():
        try:
            if args.once:
                resumed = await service.scheduler.tick()
                logger.info(f"Single tick finished: {resumed} enrollment(s) resumed.")
            else:
                await service.scheduler.start()
        finally:
            await service.shutdown()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted, shutting down.")


if __name__ == "__main__":
    main()
