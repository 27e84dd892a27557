"""Stand-ins for the app's external collaborators."""

from datetime import datetime, timedelta, timezone

from anonbox.notifications import NotificationError
from anonbox.storage import MessageStore, StorageError
from anonbox.utils import StepResult


START = datetime(2025, 12, 14, 10, 0, 0, tzinfo=timezone.utc)


class TickingClock:
    """Returns START, then advances one second per call."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = now + self.step
        return now


class FakeGeolocator:
    """Stands in for IpGeolocator; remembers which addresses were looked up."""

    def __init__(self, result: StepResult):
        self.result = result
        self.calls = []
        self.closed = False

    async def lookup(self, ip: str) -> StepResult:
        self.calls.append(ip)
        return self.result

    async def aclose(self) -> None:
        self.closed = True


class RecordingSender:
    """Stands in for EmailSender; keeps every notification it was given."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, notification) -> None:
        if self.fail:
            raise NotificationError("provider rejected the email")
        self.sent.append(notification)

    async def aclose(self) -> None:
        pass


class BrokenStore(MessageStore):
    """A store whose every operation fails."""

    def ping(self) -> bool:
        return False

    def append(self, collection, record):
        raise StorageError("disk full")

    def list_all(self, collection):
        raise StorageError("disk unreadable")

    def delete_by_id(self, collection, record_id):
        raise StorageError("disk unreadable")
