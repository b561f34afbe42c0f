import pytest

from agent_scheduler.models import (
    AtSchedule,
    CronSchedule,
    EverySchedule,
    JobInput,
    JobValidationError,
    job_name_from_prompt,
    new_job,
    parse_job,
    parse_job_input,
    parse_schedule,
)


def test_parse_schedule_variants():
    assert parse_schedule({"kind": "at", "at": "2025-06-16T08:00:00Z"}) == AtSchedule(at="2025-06-16T08:00:00Z")
    assert parse_schedule({"kind": "every", "everyMs": 60_000}) == EverySchedule(every_ms=60_000)
    assert parse_schedule({"kind": "every", "every_ms": 5, "anchor_ms": 10}) == EverySchedule(every_ms=5, anchor_ms=10)
    assert parse_schedule({"kind": "cron", "expr": "0 9 * * *", "tz": " "}) == CronSchedule(expr="0 9 * * *")


@pytest.mark.parametrize(
    "value",
    [
        None,
        {"kind": "weekly"},
        {"kind": "at", "at": 5},
        {"kind": "every"},
        {"kind": "every", "everyMs": True},
        {"kind": "cron", "expr": None},
    ],
)
def test_parse_schedule_rejects_malformed(value):
    with pytest.raises(JobValidationError):
        parse_schedule(value)


def test_cron_with_empty_expression_is_accepted():
    # an empty expression is well-formed; it simply never fires
    assert parse_schedule({"kind": "cron", "expr": ""}) == CronSchedule(expr="")


def test_parse_job_input_maps_mode():
    job_input = parse_job_input(
        {
            "prompt": "  check the build  ",
            "owner_id": "chat-1",
            "mode": "once",
            "schedule": {"kind": "at", "at": "2025-06-16T08:00:00Z"},
        }
    )
    assert job_input.prompt == "check the build"
    assert job_input.mode == "once"
    assert job_input.work_dir is None


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"owner_id": "chat-1", "schedule": {"kind": "every", "everyMs": 1}}, "prompt is required"),
        ({"prompt": "x", "schedule": {"kind": "every", "everyMs": 1}}, "owner_id is required"),
        ({"prompt": "x", "owner_id": "../etc", "schedule": {"kind": "every", "everyMs": 1}}, "Invalid id format."),
        ({"prompt": "x", "owner_id": "c", "mode": "daily", "schedule": {"kind": "every", "everyMs": 1}}, "mode"),
    ],
)
def test_parse_job_input_errors(payload, message):
    with pytest.raises(JobValidationError, match=message):
        parse_job_input(payload)


def test_job_name_truncates_long_prompts():
    assert job_name_from_prompt("short") == "short"
    assert job_name_from_prompt("x" * 60) == "x" * 50 + "..."


def test_new_job_once_deletes_after_run():
    job_input = JobInput(prompt="hello", schedule=EverySchedule(every_ms=1_000), owner_id="chat-1", mode="once")
    job = new_job(job_input, work_dir="/srv", created_at_ms=0, user_timezone=None)
    assert job.delete_after_run is True
    assert job.work_dir == "/srv"
    assert job.created_at == "1970-01-01T00:00:00.000Z"
    assert job.state.consecutive_errors == 0


def test_parse_job_accepts_numeric_owner_ids():
    job = parse_job(
        {
            "id": "abc",
            "ownerId": 12345,
            "prompt": "p",
            "schedule": {"kind": "cron", "expr": "* * * * *"},
            "state": {"consecutiveErrors": 1},
        }
    )
    assert job.owner_id == "12345"
    assert job.state.consecutive_errors == 1
    assert job.enabled is True


def test_parse_job_rejects_unknown_status():
    with pytest.raises(JobValidationError):
        parse_job(
            {
                "id": "abc",
                "ownerId": "chat",
                "prompt": "p",
                "schedule": {"kind": "at", "at": "x"},
                "state": {"lastStatus": "weird"},
            }
        )
