class CrmError(Exception):
    pass


class UnresolvableReference(CrmError):
    pass


class ValidationFailed(CrmError):
    pass


class PersistenceFailure(CrmError):
    pass


class MeetingNotFound(CrmError):
    pass


class AlreadyCanceled(CrmError):
    def __init__(self, meeting_id: str) -> None:
        super().__init__(f"Meeting {meeting_id} is already canceled.")
        self.meeting_id = meeting_id
