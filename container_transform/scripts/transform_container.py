#!/usr/bin/env python3
"""
Container Transformation Script.

Transforms running Docker containers into iSulad containers in place.
Each result is printed on stdout when it succeeded and on stderr when it
failed.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from container_transform import __version__
from container_transform.config import (
    DEFAULT_DOCKER_GRAPH,
    DEFAULT_DOCKER_STATE,
    DEFAULT_ISULAD_CONFIG_FILE,
    DEFAULT_LOG_FILE,
    TransformConfig,
    load_daemon_config,
)
from container_transform.engines.isulad import IsuladTool
from container_transform.engines.lcr import LcrRuntime
from container_transform.errors import TransformError
from container_transform.logging_config import setup_logging
from container_transform.transform.orchestrator import TransformOrchestrator, handle_signals
from container_transform.transform.rollback import CancelToken

EXIT_NORMAL = 0
EXIT_INIT_ERR = 1
EXIT_TRANSFORM_ERR = 2

ISULAD_FILE_LOG_DRIVER = "file"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="isula-transform",
        description="transform specify docker container type configuration to iSulad type",
        usage="%(prog)s [global options] --all|container_id[ container_id...]"
    )
    parser.add_argument("--log", default=DEFAULT_LOG_FILE, help="specific output log file path")
    parser.add_argument("--log-level", default="info",
                        help="Customize the level of logging for collection, allowed: debug, info, warn, error")
    parser.add_argument("--container-type", default="docker", help=argparse.SUPPRESS)
    parser.add_argument("--isulad-config-file", default=DEFAULT_ISULAD_CONFIG_FILE,
                        help="iSulad configuration file path")
    parser.add_argument("--docker-graph", default=DEFAULT_DOCKER_GRAPH, help="graph root of docker")
    parser.add_argument("--docker-state", default=DEFAULT_DOCKER_STATE, help="state root of docker")
    parser.add_argument("--all", action="store_true", help="transform all containers")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("container_ids", nargs="*", metavar="container_id", help="Container ID or unique prefix")
    return parser


def transform_init(config: TransformConfig, token: CancelToken) -> TransformOrchestrator:
    """
    Load the iSulad configuration and prepare the orchestrator.

    Raises:
        TransformError: On any init error
    """
    daemon_config = load_daemon_config(config.isulad_config_file)

    lcr = LcrRuntime()
    if daemon_config.log_driver != ISULAD_FILE_LOG_DRIVER:
        logger.info(f"isula daemon log driver is {daemon_config.log_driver}, can't redirect to file")
    else:
        try:
            lcr.log_init(daemon_config.state, daemon_config.runtime, daemon_config.log_level)
        except TransformError as e:
            logger.warning(f"lcr log init failed: {e}")

    orchestrator = TransformOrchestrator(config, daemon_config, token)
    orchestrator.initialize(IsuladTool(daemon_config, lcr))
    return orchestrator


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    os.umask(0o022)

    config = TransformConfig(
        container_ids=args.container_ids,
        all_containers=args.all,
        container_type=args.container_type,
        log_file=args.log,
        log_level=args.log_level,
        isulad_config_file=args.isulad_config_file,
        docker_graph=args.docker_graph,
        docker_state=args.docker_state
    )
    setup_logging(config.log_file, config.log_level)

    if not config.all_containers and not config.container_ids:
        print("isula-transform requires at least one container id as an input or setting the --all flag",
              file=sys.stderr)
        return EXIT_INIT_ERR

    token = CancelToken()
    handle_signals(token)

    try:
        orchestrator = transform_init(config, token)
    except TransformError as e:
        logger.error(f"transform init failed: {e}")
        print(f"transform init failed: {e}", file=sys.stderr)
        return EXIT_INIT_ERR

    exit_code = EXIT_NORMAL
    for result in orchestrator.run(config.container_ids, config.all_containers):
        if result.ok:
            print(result.message)
        else:
            exit_code = EXIT_TRANSFORM_ERR
            print(result.message, file=sys.stderr)

    if exit_code != EXIT_NORMAL:
        print("The transformation has been completed, but at least one failed", file=sys.stderr)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
