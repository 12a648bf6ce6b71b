import asyncio
import signal
import sys
from typing import Optional

from .services.container import ShopServices
from .services.database import close_db, init_db
from .services.web_server import StorefrontServer
from .utils.config import Settings
from .utils.logger import logger


class StorefrontApp:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.services: Optional[ShopServices] = None
        self.server: Optional[StorefrontServer] = None
        self._stopped = asyncio.Event()

    async def start(self):
        """
        Initialize the database, wire the services and start the HTTP site.
        """
        logger.info("Initializing storefront backend...")

        # 1. Initialize Database
        try:
            await init_db(self.settings)
            logger.info("Database connection established.")
        except Exception as e:
            logger.critical(f"Database failed to initialize: {e}")
            sys.exit(1)

        # 2. Wire services and load route modules
        self.services = ShopServices.from_settings(self.settings)
        self.server = StorefrontServer(self.services)

        # 3. Start the API
        await self.server.start()

    async def close(self):
        if self.server is not None:
            await self.server.stop()
            self.server = None
        await close_db()
        logger.info("Storefront backend shut down.")

    async def run(self):
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stopped.set)
            except NotImplementedError:
                pass
        try:
            await self._stopped.wait()
        finally:
            await self.close()


async def main():
    app = StorefrontApp()
    await app.run()
