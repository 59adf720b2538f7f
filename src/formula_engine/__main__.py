from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from .app import create_engine_app
from .environment import build_engine


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the formula computation engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    evaluate = subparsers.add_parser("evaluate", help="compute every variable of a JSON environment")
    evaluate.add_argument("config", type=Path)
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.environ.get("APP_LOG_LEVEL", "INFO").upper())

    if args.command == "serve":
        app = create_engine_app()
        app.run(host=args.host, port=args.port, debug=False)
        return

    config = json.loads(args.config.read_text(encoding="utf-8"))
    engine = build_engine(config)
    values = {variable_id: variable.to_dict()["value"] for variable_id, variable in engine.registry.get_variables().items()}
    print(json.dumps(values, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
