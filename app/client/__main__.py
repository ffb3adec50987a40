"""Optimize a local model file: ``python -m app.client model.fbx``."""

import argparse
import logging
import sys

from app.client.api import DEFAULT_PROXY_URL, ProxyClient
from app.client.flow import OptimizationFlow
from app.client.poller import ProgressUpdate
from app.client.profile_store import EstimationProfile, SqliteStore
from app.services.errors import MeshOptimizerError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upload, optimize and download a 3D model")
    parser.add_argument("file", help="Model file to optimize")
    parser.add_argument("--proxy", default=DEFAULT_PROXY_URL, help="Proxy base URL")
    parser.add_argument("--output", default=".", help="Directory for the resulting .glb")
    parser.add_argument(
        "--profile-db",
        default=SqliteStore.PROFILE_FILE,
        help="SQLite file holding learned stage durations",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def print_progress(update: ProgressUpdate) -> None:
    bar = "?" if update.indeterminate else f"{update.progress:3d}%"
    print(f"  [{update.stage:<10}] {bar}  {update.eta_text}", flush=True)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    store = SqliteStore(args.profile_db)
    flow = OptimizationFlow(
        ProxyClient(args.proxy),
        profile=EstimationProfile(store),
        output_dir=args.output,
        on_status=lambda message: print(message, flush=True),
        on_progress=print_progress,
    )
    try:
        result = flow.process_file(args.file)
    except KeyboardInterrupt:
        flow.cancel_event.set()
        print("Cancelled", file=sys.stderr)
        return 130
    except (MeshOptimizerError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Asset {result.asset_id}: {result.output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
