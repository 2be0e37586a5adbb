"""Allow ``python -m sweteam``."""

from sweteam.cli import main

main()
