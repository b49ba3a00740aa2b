from __future__ import annotations


class SolderbotError(Exception):
    pass


class InvalidGeometry(SolderbotError, ValueError):
    """Pad dimensions that cannot describe a real pad."""


class InvalidInput(SolderbotError, ValueError):
    """Solder height / wire diameter / area outside the usable range."""


class SequenceBusy(SolderbotError):
    """Sequence configuration changes are only accepted while idle."""


class CommandInFlight(SolderbotError):
    def __init__(self, command_class: str):
        super().__init__(f"A '{command_class}' command is still waiting for its acknowledgment")
        self.command_class = command_class


class HardwareFault(SolderbotError):
    """Reported by the machine (wire break, lost link); forces the run into ERROR."""


class TransportUnavailable(SolderbotError):
    def __init__(self, command: str):
        super().__init__(f"Not connected: '{command}' not sent")
        self.command = command
