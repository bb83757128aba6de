"""
main.py: Server launcher and entry point.

Run this file to start the API server and open the interactive docs:

    python main.py

The docs will open at http://127.0.0.1:8000/docs

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage (without browser auto-open):
    uvicorn app:app --reload
"""

from __future__ import annotations

import argparse
import threading
import time
import webbrowser

import uvicorn


HOST = "127.0.0.1"
PORT = 8000


def _open_browser_after_startup(url: str, delay_seconds: float = 2.0) -> None:
    """Open the docs once uvicorn has had time to run the startup sequence."""
    time.sleep(delay_seconds)
    print(f"\n  Opening API docs → {url}\n")
    webbrowser.open(url)


def main() -> None:
    """Start the parking allocation API."""
    parser = argparse.ArgumentParser(description="Run the parking slot allocation API")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--no-browser", action="store_true", help="do not open the docs page")
    args = parser.parse_args()

    if not args.no_browser:
        docs_url = f"http://{args.host}:{args.port}/docs"
        threading.Thread(
            target=_open_browser_after_startup,
            args=(docs_url,),
            daemon=True,
        ).start()

    uvicorn.run(
        "app:app",
        host=args.host,
        port=args.port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
