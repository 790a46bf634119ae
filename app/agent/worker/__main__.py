"""
CLI entry point for running the crawling agent.

This module provides a command-line interface for starting an agent,
inspecting the state it persisted and checking that its resource host
can fill a pool.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from ..config.settings import load_settings
from ..core.identity import AGENT_ALIAS_KEY, AGENT_ID_KEY
from ..pool import ResourcePool, create_host
from ..storage import MemoryStore, create_store
from ..utils.logging import setup_agent_logger
from .coordinator import (
    CONNECTION_STATUS_KEY,
    CURRENT_JOBS_KEY,
    IS_CONNECTED_KEY,
    LAST_UPDATE_KEY,
    SERVER_ID_KEY,
    STATISTICS_KEY,
    AgentCoordinator,
)
from .control import ControlPlane, ControlServer

STATUS_KEYS = [
    AGENT_ID_KEY,
    AGENT_ALIAS_KEY,
    SERVER_ID_KEY,
    IS_CONNECTED_KEY,
    CONNECTION_STATUS_KEY,
    CURRENT_JOBS_KEY,
    STATISTICS_KEY,
    LAST_UPDATE_KEY,
]


async def run_agent(
    environment: Optional[str] = None,
    log_level: str = "INFO",
    host_kind: str = "browser",
    config_overrides: Optional[Dict[str, Any]] = None,
):
    """
    Run the agent with specified configuration.

    Args:
        environment: Environment name (dev/staging/prod)
        log_level: Logging level
        host_kind: "browser" or "memory"
        config_overrides: Configuration overrides
    """
    settings = load_settings(environment=environment, **(config_overrides or {}))
    setup_agent_logger("agent.worker", level=log_level, json_logs=settings.json_logs)
    logger = logging.getLogger(__name__)

    coordinator = None
    control_server = None
    try:
        logger.info(f"Starting agent with environment: {settings.environment}")
        logger.info(
            f"Agent configuration: transport={settings.transport.value}, pool_size={settings.pool_size}, "
            f"server={settings.server_url}"
        )

        coordinator = AgentCoordinator(create_store(settings), create_host(settings, host_kind), settings)
        coordinator.setup_signal_handlers()

        if settings.control_port:
            control_server = ControlServer(ControlPlane(coordinator), settings.control_host, settings.control_port)
            await control_server.start()

        await coordinator.run()

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if control_server is not None:
            await control_server.stop()
        if coordinator is not None:
            await coordinator.on_shutdown()


async def show_status(environment: Optional[str] = None):
    """
    Print the state the agent last persisted.

    Args:
        environment: Environment name
    """
    store = None
    try:
        settings = load_settings(environment=environment)
        store = create_store(settings)
        state = await store.get(STATUS_KEYS)

        if not state:
            print("No persisted agent state found")
            sys.exit(1)

        print("Agent Status:")
        for key in STATUS_KEYS:
            value = state.get(key)
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            print(f"  {key}: {value}")

    except Exception as e:
        print(f"Status lookup failed: {e}")
        sys.exit(1)
    finally:
        if store is not None:
            await store.close()


async def health_check(environment: Optional[str] = None, host_kind: str = "browser"):
    """
    Fill a throwaway pool from the configured host and report its health.

    Args:
        environment: Environment name
        host_kind: "browser" or "memory"
    """
    host = None
    pool = None
    try:
        settings = load_settings(environment=environment)
        host = create_host(settings, host_kind)
        # Separate store so a running agent's persisted pool is left alone
        pool = ResourcePool(host, MemoryStore(), size=settings.pool_size)
        await pool.initialize()
        health = await pool.health_check()

        print("Agent Health Check Results:")
        print(f"Overall Status: {health['status']}")
        print(f"Resources: {health['size']}/{health['target_size']} ({health['idle']} idle)")

        if health["status"] != "healthy":
            sys.exit(1)

    except Exception as e:
        print(f"Health check failed: {e}")
        sys.exit(1)
    finally:
        if pool is not None:
            await pool.shutdown()
        if host is not None:
            await host.close()


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Distributed crawling agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m app.agent.worker run --environment dev
  python -m app.agent.worker run --transport websocket --pool-size 5
  python -m app.agent.worker run --host memory --control-port 8790
  python -m app.agent.worker status --environment prod
  python -m app.agent.worker health --host memory
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the agent")
    run_parser.add_argument("--environment", "-e", help="Environment (dev/staging/prod)")
    run_parser.add_argument("--agent-id", help="Fixed agent ID")
    run_parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )
    run_parser.add_argument("--pool-size", type=int, help="Override resource pool size")
    run_parser.add_argument("--transport", choices=["websocket", "http"], help="Override transport")
    run_parser.add_argument("--server-url", help="Override job server URL")
    run_parser.add_argument("--host", default="browser", choices=["browser", "memory"], help="Resource host")
    run_parser.add_argument("--control-port", type=int, help="Serve the local control endpoint on this port")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show persisted agent state")
    status_parser.add_argument("--environment", "-e", help="Environment")

    # Health command
    health_parser = subparsers.add_parser("health", help="Perform health check")
    health_parser.add_argument("--environment", "-e", help="Environment")
    health_parser.add_argument("--host", default="browser", choices=["browser", "memory"], help="Resource host")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Build config overrides
    config_overrides: Dict[str, Any] = {}
    if getattr(args, "agent_id", None):
        config_overrides["agent_id"] = args.agent_id
    if getattr(args, "pool_size", None):
        config_overrides["pool_size"] = args.pool_size
    if getattr(args, "transport", None):
        config_overrides["transport"] = args.transport
    if getattr(args, "server_url", None):
        config_overrides["server_url"] = args.server_url
    if getattr(args, "control_port", None):
        config_overrides["control_port"] = args.control_port
    if getattr(args, "log_level", None):
        config_overrides["log_level"] = args.log_level

    try:
        if args.command == "run":
            asyncio.run(
                run_agent(
                    environment=args.environment,
                    log_level=args.log_level,
                    host_kind=args.host,
                    config_overrides=config_overrides,
                )
            )
        elif args.command == "status":
            asyncio.run(show_status(environment=args.environment))
        elif args.command == "health":
            asyncio.run(health_check(environment=args.environment, host_kind=args.host))
        else:
            print(f"Unknown command: {args.command}")
            sys.exit(1)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
