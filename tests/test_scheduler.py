from transfer.scheduler import DownloadScheduler


class FakeLink:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.requests = []

    def __call__(self, file_id: str) -> bool:
        if self.accept:
            self.requests.append(file_id)
        return self.accept


def test_first_request_goes_out_immediately():
    link = FakeLink()
    scheduler = DownloadScheduler(link)
    assert scheduler.request("a")
    assert link.requests == ["a"]
    assert scheduler.in_flight == "a"


def test_only_one_request_outstanding():
    link = FakeLink()
    scheduler = DownloadScheduler(link)
    scheduler.request_all(["a", "b", "c"])
    assert link.requests == ["a"]
    assert scheduler.queued == ["b", "c"]

    scheduler.on_transfer_finished("a", succeeded=True)
    assert link.requests == ["a", "b"]
    scheduler.on_transfer_finished("b", succeeded=False)
    assert link.requests == ["a", "b", "c"]
    scheduler.on_transfer_finished("c", succeeded=True)
    assert scheduler.in_flight is None
    assert scheduler.queued == []


def test_duplicates_are_ignored():
    link = FakeLink()
    scheduler = DownloadScheduler(link)
    assert scheduler.request_all(["a", "b", "a", "b"]) == ["a", "b"]
    scheduler.on_transfer_finished("a", succeeded=True)
    assert scheduler.request("a") is False


def test_failed_file_can_be_requested_again():
    link = FakeLink()
    scheduler = DownloadScheduler(link)
    scheduler.request("a")
    scheduler.on_transfer_finished("a", succeeded=False)
    assert scheduler.request("a")
    assert link.requests == ["a", "a"]


def test_unsent_request_stays_queued():
    link = FakeLink(accept=False)
    scheduler = DownloadScheduler(link)
    scheduler.request("a")
    assert scheduler.in_flight is None
    assert scheduler.queued == ["a"]

    link.accept = True
    scheduler.drain()
    assert scheduler.in_flight == "a"


def test_reset_reports_unfinished_files():
    scheduler = DownloadScheduler(FakeLink())
    scheduler.request_all(["a", "b", "c"])
    assert scheduler.reset() == ["a", "b", "c"]
    assert scheduler.in_flight is None
    assert scheduler.queued == []


def test_finishing_another_file_keeps_the_slot():
    link = FakeLink()
    scheduler = DownloadScheduler(link)
    scheduler.request_all(["a", "b"])

    # A file that was never asked for must not free the slot
    scheduler.on_transfer_finished("zzz", succeeded=True)
    assert scheduler.in_flight == "a"
    assert link.requests == ["a"]
    assert scheduler.request("zzz") is True

    scheduler.on_transfer_finished("a", succeeded=True)
    assert link.requests == ["a", "b"]
