"""
Partition refresh pipeline components.

This package contains everything needed to keep a partitioned table in sync
with its source, refreshing only partitions whose source changed:

Modules:
    enumerators: Authoritative partition key lists (static, SQL, S3, directory)
    state_store: Durable per-partition watermarks, leases, run log and events
    freshness: Staleness policy, retry budget and probe failure policy
    executor: Streaming load of one partition into an isolated staging segment
    replacer: Atomic repoint of a partition to its staged segment
    orchestrator: Per-cycle state machine and startup recovery
    scheduler: APScheduler cron trigger and manual trigger coalescing
    factory: Builds the whole runtime from core.config.settings

Subpackages:
    sources: Partition sources (local files, S3, HTTP)
    storage: Segment/pointer storage engine
    transformers: Transformation strategies injected into the executor

Architecture:
    Each cycle runs IDLE -> ENUMERATING -> EVALUATING -> REFRESHING ->
    RECONCILING -> IDLE:

    1. Enumerate - list partition keys, fail fast on an unreachable source
    2. Evaluate - probe source metadata and compare with stored fingerprints
    3. Refresh - load stale partitions in parallel, each into its own staging
       segment, then repoint the partition in one transaction
    4. Reconcile - aggregate per-partition outcomes into a RunRecord

    Readers only ever see content of completed loads.

Usage:
    from ingestion.factory import build_runtime

Example:
    runtime = build_runtime(settings)
    await runtime.orchestrator.recover()
    run = await runtime.orchestrator.run_cycle(TriggerSource.MANUAL)

    print(f"Refreshed {run.partitions_refreshed} of {run.partitions_considered} partitions")

Error Handling:
    All components use custom exceptions from core.exceptions. Failures of
    one partition are recorded on that partition; enumeration and state
    store failures end the cycle.
"""
