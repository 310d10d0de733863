import asyncio

from chessbot.logger import setup_logging
from chessbot.main import main

setup_logging()
asyncio.run(main())
