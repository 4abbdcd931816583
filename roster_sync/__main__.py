"""Allow running as `python -m roster_sync`."""

from roster_sync.main import main

main()
