"""ekat CLI: municipality listing, street enumeration, and captcha collection."""

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from pathlib import Path

from ekat.config import settings
from ekat.core.errors import ConsistencyError, DecodeError, EkatError
from ekat.core.text import AZBUKA
from ekat.core.types import CaptchaType
from ekat.observability.logging import log_context, run_id, setup_logging
from ekat.observability.tracing import init_tracking, log_params, set_tag, start_run

logger = logging.getLogger(__name__)


def _init(args: argparse.Namespace) -> None:
    setup_logging(json_format=args.log_json, level=args.log_level)
    init_tracking()
    run_id.set(uuid.uuid4().hex[:12])


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-json", action="store_true", default=settings.log_json,
                        help="Emit JSON log lines")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level (default: %(default)s)")


def _install_shutdown(shutdown: asyncio.Event) -> None:
    """Ctrl+C / SIGTERM: stop issuing requests, let in-flight ones finish."""
    loop = asyncio.get_running_loop()

    def _stop() -> None:
        if not shutdown.is_set():
            logger.info("Shutdown requested, finishing in-flight requests...")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform")


# ---------------------------------------------------------------------------
# ekat-municipalities
# ---------------------------------------------------------------------------

def municipalities_main() -> None:
    """Fetch all municipalities: ekat-municipalities [--output-dir DIR]"""
    parser = argparse.ArgumentParser(description="Fetch municipalities and cadastral municipalities")
    parser.add_argument("--output-dir", type=Path, default=settings.output_dir,
                        help="Output directory (default: %(default)s)")
    _add_common(parser)
    args = parser.parse_args()
    _init(args)

    from ekat.ingestion.municipalities import MunicipalityScraper
    from ekat.storage.cache import save_municipalities

    try:
        municipalities = asyncio.run(MunicipalityScraper().scrape())
        path = save_municipalities(municipalities, args.output_dir)
    except EkatError as e:
        logger.error("Error fetching municipalities: %s", e)
        sys.exit(1)

    print(f"Saved {len(municipalities)} municipalities to {path}")


# ---------------------------------------------------------------------------
# ekat-streets
# ---------------------------------------------------------------------------

def streets_main() -> None:
    """Enumerate streets for a municipality: ekat-streets <municipality_id>"""
    parser = argparse.ArgumentParser(description="Fetch settlements and streets for a municipality")
    parser.add_argument("municipality_id", type=int, help="Municipality ID, e.g. 80438")
    parser.add_argument("--cache-dir", type=Path, default=settings.cache_dir,
                        help="Street search cache directory (default: %(default)s)")
    parser.add_argument("--output-dir", type=Path, default=settings.output_dir,
                        help="Output directory (default: %(default)s)")
    parser.add_argument("--merge-only", action="store_true",
                        help="Skip fetching; merge the existing cache")
    _add_common(parser)
    args = parser.parse_args()
    _init(args)

    sys.exit(asyncio.run(_run_streets(args)))


async def _run_streets(args: argparse.Namespace) -> int:
    from ekat.pipeline.streets import fetch_streets, merge_and_save

    shutdown = asyncio.Event()
    _install_shutdown(shutdown)

    with start_run(run_name=f"streets-{args.municipality_id}"), log_context(municipality=args.municipality_id):
        log_params({
            "municipality": args.municipality_id,
            "alphabet_size": len(AZBUKA),
            "merge_only": args.merge_only,
        })
        try:
            if args.merge_only:
                report = merge_and_save(args.municipality_id, args.cache_dir, args.output_dir)
            else:
                report = await fetch_streets(
                    args.municipality_id, args.cache_dir, args.output_dir, shutdown=shutdown,
                )
        except (ConsistencyError, DecodeError) as e:
            set_tag("status", "merge_failed")
            logger.error("Error merging scraped streets: %s", e)
            return 1
        except EkatError as e:
            set_tag("status", "failed")
            logger.error("Error fetching streets: %s", e)
            return 1

    if report.output is None:
        print(f"Saved {report.saved} queries to the cache; not merged "
              f"({'interrupted' if report.interrupted else f'{len(report.stats.errors)} errors'}).")
        return 1

    print(f"Saved {report.settlements} settlements / {report.streets} streets to {report.output}")
    return 0


# ---------------------------------------------------------------------------
# ekat-captchas
# ---------------------------------------------------------------------------

def captchas_main() -> None:
    """Collect captcha samples until Ctrl+C: ekat-captchas [--type 4|5]"""
    parser = argparse.ArgumentParser(description="Collect multi-sample captcha images")
    parser.add_argument("--municipalities", type=Path,
                        default=Path(settings.output_dir) / "municipalities.json",
                        help="JSON file containing municipalities (default: %(default)s)")
    parser.add_argument("--output-dir", type=Path, default=settings.captcha_dir,
                        help="Output directory for metadata and images (default: %(default)s)")
    parser.add_argument("--type", choices=["4", "5"], default="4", help="Captcha length")
    parser.add_argument("--samples", type=int, default=settings.captcha_samples,
                        help="Samples per captcha (default: %(default)s)")
    parser.add_argument("--max", type=int, default=0, help="Stop after this many captchas (0 = run until Ctrl+C)")
    _add_common(parser)
    args = parser.parse_args()
    _init(args)

    sys.exit(asyncio.run(_run_captchas(args)))


async def _run_captchas(args: argparse.Namespace) -> int:
    from ekat.pipeline.captchas import fetch_captchas
    from ekat.storage.cache import load_municipalities

    captcha_type = CaptchaType.ALPHANUM_4 if args.type == "4" else CaptchaType.ALPHANUM_5
    shutdown = asyncio.Event()
    _install_shutdown(shutdown)

    with start_run(run_name=f"captchas-{captcha_type.value}"):
        log_params({"type": captcha_type.value, "samples": args.samples, "max": args.max})
        try:
            municipalities = load_municipalities(args.municipalities)
            report = await fetch_captchas(
                municipalities,
                captcha_type=captcha_type,
                captcha_dir=args.output_dir,
                samples=args.samples,
                max_captchas=args.max,
                shutdown=shutdown,
            )
        except (EkatError, ValueError) as e:
            logger.error("Error collecting captchas: %s", e)
            return 1

    print(f"QUIT: {report.saved} captchas fetched")
    return 1 if report.save_errors else 0
