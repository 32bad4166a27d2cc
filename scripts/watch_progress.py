import argparse
import asyncio
import logging
from typing import Optional

from common.websockets import BusClient

# ╔═══════════════════════════════════════════════════════════════════════╗
# ║  Watch bulk DM progress from a terminal                               ║
# ║                                                                       ║
# ║  Usage:                                                               ║
# ║    python watch_progress.py --url ws://localhost:8080/ws              ║
# ║                                                                       ║
# ║  The script will:                                                     ║
# ║    - Subscribe to the dashboard's live channel                        ║
# ║    - Print one line per progress or log event                         ║
# ║    - Exit after a terminal event when --until-done is given           ║
# ╚═══════════════════════════════════════════════════════════════════════╝

TERMINAL = {"completed", "error", "cancelled"}


class ProgressPrinter:
    """Formats envelopes from the live channel as single lines."""

    def __init__(self, until_done: bool = False) -> None:
        self.until_done = until_done
        self.done = asyncio.Event()

    def format(self, env: dict) -> Optional[str]:
        kind = env.get("type")
        if kind == "log":
            return f"[{env.get('logType', 'info'):<7}] {env.get('message', '')}"
        if kind != "progress":
            return None
        d = env.get("data") or {}
        line = (
            f"[{d.get('status', '?'):<15}] job={d.get('jobId', '-')} "
            f"batch {d.get('currentBatch', 0)}/{d.get('totalBatches', 0)} "
            f"sent={d.get('sent', 0)} failed={d.get('failed', 0)} total={d.get('total', 0)}"
        )
        if "batchProgress" in d:
            line += f" ({d['batchProgress']}% of batch)"
        if d.get("error"):
            line += f" error={d['error']}"
        return line

    async def __call__(self, env: dict) -> None:
        line = self.format(env)
        if line:
            print(line, flush=True)
        if (
            self.until_done
            and env.get("type") == "progress"
            and (env.get("data") or {}).get("status") in TERMINAL
        ):
            self.done.set()


async def _run(url: str, until_done: bool) -> None:
    printer = ProgressPrinter(until_done=until_done)
    client = BusClient(url, logger=logging.getLogger("botdash.watch"))
    task = asyncio.create_task(client.subscribe(printer))
    if not until_done:
        await task
        return
    await printer.done.wait()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def main() -> None:
    parser = argparse.ArgumentParser(description="Print live bulk DM progress.")
    parser.add_argument("--url", default="ws://localhost:8080/ws")
    parser.add_argument("--until-done", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING)
    try:
        asyncio.run(_run(args.url, args.until_done))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
