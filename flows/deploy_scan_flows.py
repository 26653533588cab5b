from flows.enrich_scan_flow import enrich_scan
from flows.process_scan_flow import process_scan
from flows.scan_dispatcher_flow import hourly_scan_dispatcher

WORK_POOL = "outrank-managed"


if __name__ == "__main__":
    """
    Deploy the scan flows to Prefect.

    Deployment names match outrank.events.DEFAULT_DEPLOYMENTS, which is how
    events reach them.

    Usage:
        PYTHONPATH=. python flows/deploy_scan_flows.py
    """
    hourly_scan_dispatcher.from_source(
        source=".",
        entrypoint="flows/scan_dispatcher_flow.py:hourly_scan_dispatcher",
    ).deploy(
        name="hourly-scan-dispatcher",
        work_pool_name=WORK_POOL,
        work_queue_name="scan-dispatch",
        cron="0 * * * *",  # every hour on the hour, UTC
        tags=["scan", "dispatcher"],
        parameters={},
    )

    process_scan.from_source(
        source=".",
        entrypoint="flows/process_scan_flow.py:process_scan",
    ).deploy(
        name="process-scan",
        work_pool_name=WORK_POOL,
        work_queue_name="scans",
        tags=["scan"],
    )

    enrich_scan.from_source(
        source=".",
        entrypoint="flows/enrich_scan_flow.py:enrich_scan",
    ).deploy(
        name="enrich-scan",
        work_pool_name=WORK_POOL,
        work_queue_name="scans",
        tags=["scan", "enrichment"],
    )
