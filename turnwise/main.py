"""turnwise - chat with an LLM without losing the thread.

Entry point for the application.
Usage:
    python -m turnwise.main                     # Start interactive chat
    python -m turnwise.main --init              # Write default config
    python -m turnwise.main --model gpt-4o      # Chat with another model
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from turnwise.config import TurnwiseConfig, get_turnwise_home, load_config, save_default_config
from turnwise.core.controller import ControllerPool
from turnwise.core.engine import SessionOrchestrator
from turnwise.core.model_router import ModelRouter
from turnwise.core.tokens import estimator_for

logger = structlog.get_logger()


def setup_logging(level: int = 20) -> None:
    """Configure structured logging (INFO by default)."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _load_env() -> None:
    """Load .env files from the working directory and ~/.turnwise/."""
    from dotenv import load_dotenv

    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    home_env = get_turnwise_home() / ".env"
    if home_env.exists():
        load_dotenv(home_env)


def build_engine(config: TurnwiseConfig) -> SessionOrchestrator:
    """Build the session orchestrator with its router, controller pool and estimator."""
    _load_env()
    model_router = ModelRouter(config)
    estimator = estimator_for(config.tokenizer, config.models.default.model)
    logger.debug("token_estimator", tokenizer=config.tokenizer)
    return SessionOrchestrator(config, model_router, pool=ControllerPool(), estimator=estimator)


async def async_main(config: TurnwiseConfig) -> None:
    """Async entry point for the interactive chat."""
    from turnwise.ui.cli import CLI

    engine = build_engine(config)
    cli = CLI(engine=engine, config=config)
    logger.info("turnwise_started", model=config.models.default.model)
    try:
        await cli.run()
    finally:
        stopped = engine.stop_all()
        engine.compressor.cancel_all()
        await engine.compressor.drain()
        logger.info("turnwise_stopped", requests_stopped=stopped)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="turnwise",
        description="Chat with an LLM using a token-budgeted window and rolling memory",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Write the default config to ~/.turnwise/config.yaml",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: ~/.turnwise/config.yaml)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model to chat with (LiteLLM name, e.g. gpt-4o or ollama/llama3.1)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args()

    setup_logging(10 if args.debug else 30)

    if args.init:
        config_path = save_default_config(
            Path(args.config) if args.config else None
        )
        print(f"Default config saved to: {config_path}")
        return

    config_path = Path(args.config) if args.config else None
    config = load_config(config_path)
    if args.model:
        config.models.default = config.models.default.model_copy(update={"model": args.model})

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
