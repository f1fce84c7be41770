class LLMResponseError(Exception):
    """The completion service returned text that is not a usable decision."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class StaleHoldingError(Exception):
    """A holding changed between read and write (version mismatch)."""

    def __init__(self, holding_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Holding {holding_id} was modified by another request "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.holding_id = holding_id
        self.expected_version = expected_version
        self.actual_version = actual_version
