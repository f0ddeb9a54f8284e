# python -m matchfeed — init the database and serve the HTTP API
import argparse
import asyncio
import logging

from . import config
from .api import serve
from .database import init_db


def main() -> None:
    parser = argparse.ArgumentParser(prog="matchfeed")
    parser.add_argument("--host", default=config.API_HOST)
    parser.add_argument("--port", type=int, default=config.API_PORT)
    parser.add_argument("--init-only", action="store_true", help="create tables and exit")
    parser.add_argument("--reset", action="store_true", help="drop existing data first")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
                        format="%(levelname)s:%(name)s:%(message)s")

    async def _run():
        if args.init_only or args.reset:
            backend = await init_db(reset=args.reset)
            await backend.close()
            if args.init_only:
                return
        await serve(args.host, args.port)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
