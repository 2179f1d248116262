#!/usr/bin/env python3
"""
alphafeed CLI

Run the recurring sentiment pipeline, run a single cycle, or export the
saved content-source session for reuse as X_COOKIES.
"""

import argparse
import json
import signal
import sys
import threading
from alphafeed.config import get_settings
from alphafeed.errors import AuthenticationError
from alphafeed.logging_config import setup_logging, get_logger
from alphafeed.orchestration.tasks import build_pipeline
from alphafeed.services.session import SessionStore

logger = get_logger(__name__)

def run_forever() -> int:
    """Start the pipeline and block until SIGINT/SIGTERM."""
    pipeline = build_pipeline()
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        pipeline.initialize()
    except AuthenticationError as e:
        logger.error(f"Failed to initialize sentiment pipeline: {e}")
        pipeline.shutdown()
        return 1

    stop.wait()
    pipeline.shutdown()
    return 0

def run_once() -> int:
    """Authenticate, run exactly one cycle and print the envelope."""
    pipeline = build_pipeline()
    try:
        pipeline.fetcher.initialize()
        envelope = pipeline.trigger()
        print(json.dumps(envelope, indent=2))
        return 0
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Pipeline cycle failed: {e}")
        return 1
    finally:
        pipeline.shutdown()

def export_session() -> int:
    """Print the saved session in the form X_COOKIES expects."""
    settings = get_settings()
    session = SessionStore(settings.session_dir, settings.x_username).load()
    if session is None:
        logger.error("Session file not found")
        return 1

    print("Add this to your .env file:")
    print(f"X_COOKIES='{json.dumps(session.cookies)}'")
    return 0

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="alphafeed - social signal digest pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the recurring pipeline until interrupted
  alphafeed run

  # Run a single cycle and print the digest
  alphafeed once --log-level DEBUG

  # Print the saved session for X_COOKIES
  alphafeed export-session
        """
    )

    parser.add_argument(
        'command',
        choices=['run', 'once', 'export-session'],
        help='What to do'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: LOG_LEVEL setting)'
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level or get_settings().log_level)

    if args.command == 'run':
        return run_forever()
    if args.command == 'once':
        return run_once()
    return export_session()

if __name__ == '__main__':
    sys.exit(main())
