import pytest

from conftest import make_report
from dmarc_sender.persistence import Persistence


@pytest.mark.asyncio
async def test_report_queue_lifecycle(tmp_path):
    db = tmp_path / "reports.db"
    p = Persistence(str(db))
    await p.init_db()

    assert await p.insert_report(make_report("r1", rua="mailto:a@example.com")) is True
    assert await p.insert_report(make_report("r2", rua="https://r.example.net/in")) is True
    assert await p.insert_report(make_report("r1")) is False

    todo = await p.retrieve_todo()
    assert [r.report_id for r in todo] == ["r1", "r2"]
    assert todo[0].rua == "mailto:a@example.com"
    assert todo[0].policy_published.p == "reject"
    assert todo[0].begin == 1700000000
    assert todo[0].error_count == 0

    assert len(await p.retrieve_todo(limit=1)) == 1
    assert await p.count_reports() == 2

    assert await p.delete_report("r1") is True
    assert await p.delete_report("r1") is False
    assert await p.get_report("r1") is None
    assert await p.count_reports() == 1


@pytest.mark.asyncio
async def test_error_trail(tmp_path):
    p = Persistence(str(tmp_path / "errors.db"))
    await p.init_db()
    await p.insert_report(make_report("r1"))

    assert await p.record_error("r1", "connect_failure: mx down") == 1
    assert await p.record_error("r1", "timeout") == 2

    report = await p.get_report("r1")
    assert report.error_count == 2
    assert report.errors == ["connect_failure: mx down", "timeout"]

    listing = await p.list_reports()
    assert listing[0]["id"] == "r1"
    assert listing[0]["error_count"] == 2
    assert listing[0]["rua"] == "mailto:dmarc@example.com"
    assert listing[0]["xml_bytes"] == len(report.xml)

    await p.delete_report("r1")
    assert await p.list_reports() == []


def test_empty_path_uses_default_file():
    assert Persistence("").db_path == "dmarc_reports.db"
    assert Persistence(None).db_path == "dmarc_reports.db"
