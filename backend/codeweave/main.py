# backend/codeweave/main.py
import argparse
import asyncio
import logging
import platform
import sys
from pathlib import Path
from typing import List, Optional

from .core.config_manager import ConfigManager
from .core.exceptions import CoreError
from .core.orchestrator import CodingOrchestrator, OrchestratorServices, create_collaborator

# --- Logging Configuration ---
LOG_LEVEL = logging.INFO
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s'  # Include thread name

# Third-party loggers that are too chatty at INFO.
NOISY_LOGGERS = ("openai", "httpx", "httpcore", "urllib3", "markdown_it")

logger = logging.getLogger(__name__)


def configure_logging(level: int = LOG_LEVEL, log_file: Optional[Path] = None) -> None:
    """Configures root logging to stdout, and optionally to a file as well."""
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8', mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)
        logging.info(f"--- Log session started. File logging configured to: {log_file} ---")


def _print_progress(progress: dict) -> None:
    message = f" - {progress['message']}" if progress.get("message") else ""
    print(f"[{progress['status']}] {progress['task_id']}{message}")


async def run_request(workspace: Path, request: str) -> int:
    """Runs one request against `workspace` with auto-approval. Returns a process exit code."""
    config_manager = ConfigManager(workspace)
    settings = config_manager.load()
    collaborator = create_collaborator(settings, config_manager)
    services = OrchestratorServices.create(workspace, collaborator, settings)
    orchestrator = CodingOrchestrator(services, progress_callback=_print_progress)
    report = await orchestrator.handle_request(request)
    print(report.summary)
    return 0 if report.status == "COMPLETED" else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="codeweave", description="Plan and apply a coding request to a workspace.")
    parser.add_argument("request", help="Natural-language description of the change.")
    parser.add_argument("--workspace", type=Path, default=Path.cwd(), help="Workspace root (default: current directory).")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file.")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging.")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.debug else LOG_LEVEL, args.log_file)
    logger.info("=" * 60)
    logger.info("Starting codeweave...")
    logger.info(f"Python Version: {sys.version}")
    logger.info(f"Platform: {platform.system()} ({platform.release()}) - {platform.machine()}")
    logger.info("=" * 60)

    try:
        return asyncio.run(run_request(args.workspace, args.request))
    except (CoreError, ValueError) as e:
        logger.error(f"Request failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
