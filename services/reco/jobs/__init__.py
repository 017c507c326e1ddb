"""
Periodic maintenance jobs for the recommendation core.

Both run inside the operator process on a timer (RecoCore.start). The
profile recompute can also run standalone from cron:

Usage:
    python -m services.reco.jobs.profile_recompute [--all]

    profile_recompute  full recompute for profiles with incremental drift
    index_compaction   rebuild the ANN graph without tombstoned nodes
"""
