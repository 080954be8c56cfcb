from utils.database import initialize_database
from core import GatewayConfig, setup_logger
import asyncio
import asyncpg

logger = setup_logger()


async def main():
    logger.info("Running PostgreSQL init scripts")
    config = GatewayConfig.from_env()
    postgres_config = config.load_postgres_config()
    postgres_config.pop("max_shared", None)
    conn = await asyncpg.connect(**postgres_config)
    try:
        await initialize_database(conn, debug=True)
    finally:
        await conn.close()
    logger.info("Done!")


if __name__ == "__main__":
    asyncio.run(main())
