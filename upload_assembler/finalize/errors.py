"""
Exceptions raised while turning a completed upload into a placed file.
"""


class FinalizeError(Exception):
    """Base class for assembly, naming and placement failures"""


class NameConflictError(FinalizeError):
    """Destination name exists and the duplicate policy forbids reuse"""

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(
            f'File "{filename}" already exists and duplicates are not allowed'
        )


class NameProbeExhaustedError(FinalizeError):
    """No free numbered name was found within the search limit"""

    def __init__(self, filename: str, max_probes: int):
        self.filename = filename
        self.max_probes = max_probes
        super().__init__(
            f'No free name for "{filename}" after {max_probes} numbered candidates'
        )


class AssemblyError(FinalizeError):
    """A multipart group could not be concatenated"""


class PlacementError(FinalizeError):
    """A file could not be moved to its destination"""
