"""Entrypoint for `python -m Ktx2Brew`."""
import logging

logger = logging.getLogger("ktx2_pipeline")


def _run_cli():
    from .cli import main as cli_main
    logger.debug("Dispatching to CLI entrypoint.")
    cli_main()


if __name__ == "__main__":
    _run_cli()
