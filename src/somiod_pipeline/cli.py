"""Command-line interface to the `.NotificationPipeline`.

This module provides the ``somiod-pipeline`` command. It loads a
`.PipelineConfig` from a JSON file or string, registers the pipeline's
resources with the middleware, and then listens for notifications until it
is interrupted (or the broker connection is lost).

.. code-block:: bash

    somiod-pipeline -c dashboard.json --log-level DEBUG

Exit codes:

* 0 -- stopped by the user (Ctrl+C).
* 2 -- the middleware or broker could not be reached, or the broker
  connection was lost.
* 3 -- the configuration could not be read.
"""

from argparse import ArgumentParser, Namespace
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from .config import PipelineConfig
from .exceptions import ListenerConnectionError, MiddlewareError, SubscriptionError
from .logs import configure_logging
from .pipeline import NotificationPipeline


_LOGGER = logging.getLogger(__name__)


def get_default_parser() -> ArgumentParser:
    """Return the default CLI parser for the pipeline.

    :return: an `argparse.ArgumentParser` set up with the options for
        ``somiod-pipeline``.
    """
    parser = ArgumentParser(
        description="Archive SOMIOD notifications and act on new readings."
    )
    parser.add_argument("-c", "--config", type=str, help="Path to configuration file")
    parser.add_argument("-j", "--json", type=str, help="Configuration as JSON string")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level, e.g. DEBUG, INFO or WARNING.",
    )
    parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Don't register the application and subscriptions before listening.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Load the configuration and set up the pipeline, but don't run it.",
    )
    return parser


def parse_args(argv: Optional[list[str]] = None) -> Namespace:
    r"""Process command line arguments.

    The arguments are defined in `.get_default_parser`\ .

    :param argv: command line arguments (defaults to arguments supplied
        to the current command).

    :return: a namespace with the extracted options.
    """
    parser = get_default_parser()
    return parser.parse_args(argv)


def config_from_args(args: Namespace) -> PipelineConfig:
    """Load the configuration from a supplied file or JSON string.

    :param args: Parsed arguments from `.parse_args`.

    :return: the pipeline configuration.

    :raise FileNotFoundError: if the configuration file specified is missing.
    :raise RuntimeError: if neither a config file nor a string is provided,
        or both are.
    """
    if args.config:
        if args.json:
            raise RuntimeError("Can't use both --config and --json simultaneously.")
        try:
            with open(args.config) as f:
                return PipelineConfig.model_validate_json(f.read())
        except FileNotFoundError as e:
            raise FileNotFoundError(
                f"Could not find configuration file {args.config}"
            ) from e
    elif args.json:
        return PipelineConfig.model_validate_json(args.json)
    else:
        raise RuntimeError("No configuration (or empty configuration) provided")


def run_from_cli(
    argv: Optional[list[str]] = None, dry_run: bool = False
) -> Optional[NotificationPipeline]:
    r"""Run the pipeline from the command line.

    This parses the arguments, loads the configuration, creates a
    `.NotificationPipeline`\ , bootstraps it and runs it until Ctrl+C is
    pressed.

    :param argv: command line arguments (defaults to arguments supplied
        to the current command).
    :param dry_run: may be set to ``True`` to return the pipeline once it
        has been created, without contacting the middleware or the broker.
        The ``--dry-run`` flag does the same.

    :return: the `.NotificationPipeline`\ , if this is a dry run.
    """
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
        config = config_from_args(args)
    except (ValidationError, ValueError, RuntimeError, FileNotFoundError) as e:
        print(f"Error reading pipeline configuration:\n{e}")
        sys.exit(3)
    pipeline = NotificationPipeline(config)
    if dry_run or args.dry_run:
        return pipeline
    try:
        if not args.no_bootstrap:
            pipeline.bootstrap()
        with pipeline:
            print("Listening for notifications. Press Ctrl+C to stop.")
            pipeline.wait()
    except KeyboardInterrupt:
        _LOGGER.info("Shutting down")
    except (MiddlewareError, ListenerConnectionError, SubscriptionError) as e:
        _LOGGER.error("%s", e)
        sys.exit(2)
    finally:
        pipeline.close()
    return None


def main() -> None:
    """Entry point for the ``somiod-pipeline`` script."""
    run_from_cli()
