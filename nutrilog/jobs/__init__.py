# -*- coding: utf-8 -*-
"""Background job engine for meal photo analysis.

`JobScheduler` owns job state, `WorkerExecutor` runs single attempts,
`RetryPolicy` classifies errors and spaces retries, and
`ResourceLifecycleManager` decides what happens to the photo afterwards.
"""
