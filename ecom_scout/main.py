"""Grocery Price Scout - Main Entry Point."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from .config_loader import build_automation_config, load_settings, load_sites
from .jobs import JobManager
from .models import Job, JobStatus


def run_web_server(host: str = "0.0.0.0", port: int = 8080):
    """Start the job API server."""
    import uvicorn
    from .web.app import app

    print(f"\n{'=' * 60}")
    print("GROCERY PRICE SCOUT - JOB API")
    print(f"{'=' * 60}")
    print(f"Starting web server on http://{host}:{port}")
    print(f"{'=' * 60}\n")

    uvicorn.run(app, host=host, port=port, log_level="info")


def configure_logging(verbose: bool = False) -> None:
    """Configure structured logging.

    Args:
        verbose: Enable debug level logging if True.
    """
    log_level = logging.DEBUG if verbose else logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        stream=sys.stdout,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Grocery Price Scout - compare product prices across grocery sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Compare tomato prices in Mumbai on every configured site
  python -m ecom_scout.main --product tomato --location Mumbai

  # Only Zepto and D-Mart, with a visible browser for debugging
  python -m ecom_scout.main -p "amul butter" -l Pune --sites zepto,dmart --visible

  # Start the job API
  python -m ecom_scout.main --web --port 8080
        """,
    )
    parser.add_argument("--product", "-p", help="Product to search for (required for CLI mode)")
    parser.add_argument("--location", "-l", help="Delivery location (required for CLI mode)")
    parser.add_argument(
        "--sites",
        help="Comma-separated site keys to run (default: all enabled sites)",
    )
    parser.add_argument(
        "--settings",
        "-s",
        type=Path,
        default=Path("config/settings.yaml"),
        help="Path to settings.yaml configuration file",
    )
    parser.add_argument(
        "--sites-config",
        "-c",
        type=Path,
        default=Path("config/sites.yaml"),
        help="Path to sites.yaml configuration file (default: config/sites.yaml)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        help="Output directory for JSON results (default: from settings)",
    )
    parser.add_argument(
        "--visible",
        action="store_true",
        help="Run browser with visible window (for debugging)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--web",
        action="store_true",
        help="Start the job API server instead of CLI",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for web server (default: 8080)",
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host for web server (default: 0.0.0.0)",
    )

    return parser.parse_args(argv)


async def run_job(manager: JobManager, product: str, location: str) -> Job:
    """Submit one job and wait for it in-process."""
    job_id = await manager.submit(product, location)
    try:
        return await manager.wait_for(job_id)
    finally:
        await manager.shutdown()


def print_summary(job: Job) -> None:
    summary = job.summary()
    print(f"\n{'=' * 60}")
    print(f"RESULTS: {job.product} in {job.location}")
    print(f"{'=' * 60}")
    for result in job.site_results:
        if result.success:
            prices = [p.price for p in result.products if p.price is not None]
            cheapest = f", cheapest ₹{min(prices)}" if prices else ""
            print(f"  {result.site:<15} OK    {result.product_count} products{cheapest}")
            if result.artifact_path:
                print(f"  {'':<15}       -> {result.artifact_path}")
        else:
            print(f"  {result.site:<15} FAIL  {result.error}")
    print(f"{'-' * 60}")
    print(
        f"Sites: {summary['successCount']}/{summary['totalWebsites']} succeeded, "
        f"{summary['totalProducts']} products"
    )
    if job.error:
        print(f"Job error: {job.error}")
    print(f"{'=' * 60}\n")


def main(argv: Optional[list[str]] = None) -> int:
    """Run one price comparison job from the command line.

    Returns:
        Exit code: 0 if at least one site succeeded, 1 if all failed,
        2 for usage or configuration errors, 130 when interrupted.
    """
    args = parse_args(argv)

    # Web mode
    if args.web:
        run_web_server(host=args.host, port=args.port)
        return 0

    if not args.product or not args.location:
        print("Error: --product and --location are required for CLI mode", file=sys.stderr)
        print("Use --web to start the job API instead", file=sys.stderr)
        return 2

    configure_logging(args.verbose)

    logger = structlog.get_logger()

    try:
        settings = load_settings(args.settings)
        sites = load_sites(args.sites_config)

        if args.sites:
            wanted = [key.strip() for key in args.sites.split(",") if key.strip()]
            unknown = sorted(set(wanted) - {s.key for s in sites})
            if unknown:
                raise ValueError(f"Unknown or disabled site(s): {', '.join(unknown)}")
            sites = [s for s in sites if s.key in wanted]

        overrides = {"headless": not args.visible}
        if args.output:
            overrides["output_dir"] = args.output
        config = build_automation_config(settings, **overrides)

    except FileNotFoundError as e:
        logger.error("file_not_found", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 2

    except ValueError as e:
        logger.error("configuration_error", error=str(e))
        print(f"Configuration Error: {e}", file=sys.stderr)
        return 2

    logger.info(
        "starting_comparison",
        product=args.product,
        location=args.location,
        sites=[s.key for s in sites],
        headless=config.headless,
    )

    manager = JobManager(sites, config, max_jobs=int(settings["max_jobs"]))

    try:
        job = asyncio.run(run_job(manager, args.product, args.location))

    except KeyboardInterrupt:
        logger.info("interrupted_by_user")
        print("\nComparison interrupted by user.", file=sys.stderr)
        return 130

    print_summary(job)

    if job.status == JobStatus.COMPLETED and any(r.success for r in job.site_results):
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
