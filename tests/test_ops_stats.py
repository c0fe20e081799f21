from vote_gateway.ops_stats import OpsStats


def test_snapshot_counts_and_extra():
    stats = OpsStats()
    stats.record_submission("participant", "inserted")
    stats.record_submission("evaluator", "replaced")
    stats.record_rejection("VOTE_E_CLOSED")
    stats.record_rejection("VOTE_E_CLOSED")
    stats.record_anchor_failure()
    stats.record_audit_failure()
    stats.record_storage_lockdown()

    snap = stats.snapshot(extra={"lockdown_active": False})
    assert snap["submissions_total"] == 2
    assert snap["submissions_by_outcome"] == {"inserted": 1, "replaced": 1}
    assert snap["submissions_by_constituency"] == {"participant": 1, "evaluator": 1}
    assert snap["rejections_by_code"] == {"VOTE_E_CLOSED": 2}
    assert snap["anchor_failures_total"] == 1
    assert snap["audit_failures_total"] == 1
    assert snap["storage_lockdown_total"] == 1
    assert snap["lockdown_active"] is False
    assert snap["uptime_seconds"] >= 0


def test_reset_clears_counters():
    stats = OpsStats()
    stats.record_rejection("VOTE_E_CLOSED")
    stats.reset()
    snap = stats.snapshot()
    assert snap["rejections_total"] == 0
    assert snap["rejections_by_code"] == {}
