"""Allow the pipeline to be run with ``python -m somiod_pipeline``."""

from .cli import main

main()
