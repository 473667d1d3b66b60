"""CLI entrypoints for the site agent (serve, detect, render-config)."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from sirka_agent.core.exceptions import RuntimeUnavailableError


def main():
    parser = argparse.ArgumentParser(prog="sirka-agent", description="Sirka static site agent")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("serve", help="Run the agent HTTP API (default)")
    sub.add_parser("detect", help="Print the runtime backend this host would use")

    cmd_render = sub.add_parser("render-config", help="Print the nginx config for a site directory")
    cmd_render.add_argument("served_path", help="Directory holding the site's files")
    cmd_render.add_argument("--site-id", required=True)
    cmd_render.add_argument("--site-name", default=None)
    cmd_render.add_argument("--domain", default=None, help="Omit for the catch-all server")

    args = parser.parse_args()

    if args.cmd == "detect":
        from sirka_agent.backends.commands import CommandRunner
        from sirka_agent.backends.detect import detect_backend_kind
        from sirka_agent.core.config import Settings

        settings = Settings()
        try:
            kind = asyncio.run(detect_backend_kind(settings.runtime, CommandRunner()))
        except RuntimeUnavailableError as e:
            print(f"ERROR: {e}")
            sys.exit(1)
        print(kind.value)
        return

    if args.cmd == "render-config":
        from sirka_agent.deploy.nginx_config import detect_index_candidates, generate_site_config

        served = Path(args.served_path).resolve()
        text = generate_site_config(
            args.site_id,
            args.site_name or args.site_id,
            args.domain,
            str(served),
            detect_index_candidates(served),
        )
        sys.stdout.write(text)
        return

    from sirka_agent.main import run
    run()


if __name__ == "__main__":
    main()
