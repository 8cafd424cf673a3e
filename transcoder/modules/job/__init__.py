"""Job module.

Job model and state machine, job stores, the scheduler that runs jobs on a
bounded worker pool, the engine facade and its HTTP API.
"""
