# -*- coding: utf-8 -*-
"""nutrilog — passive nutrition logging backend.

A captured meal photo becomes a durable background job: the photo is analyzed by
a remote vision model and the resulting nutrition record is saved to the
health-data store. See `nutrilog.jobs` for the job engine.
"""
