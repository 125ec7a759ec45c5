"""Errors raised by the sync engine (ERP transport errors live in client.py)."""


class SyncError(Exception):
    """Base exception for sync engine errors."""


class IntegrationNotFoundError(SyncError):
    def __init__(self, integration_id):
        super().__init__(f"Integration not found: {integration_id}")
        self.integration_id = integration_id


class IntegrationConfigError(SyncError):
    """Integration configuration cannot be used for a sync run."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class UnknownEntityError(IntegrationConfigError):
    def __init__(self, name: str):
        super().__init__(f"Unknown target entity: {name}")
        self.name = name


class SyncInProgressError(SyncError):
    def __init__(self, integration_id):
        super().__init__(f"Sync already in progress for integration {integration_id}")
        self.integration_id = integration_id
