"""Allow ``python -m taskwave``."""

from taskwave.cli import main

main()
