"""Process exit statuses returned by ``gsadmin`` commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status of a gsadmin command.

    ``VALIDATION`` covers bad configuration and unknown servers or actions,
    ``ENVIRONMENT`` a missing toolchain script on this host, and ``PROVIDER``
    a toolchain run that did not report success.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
