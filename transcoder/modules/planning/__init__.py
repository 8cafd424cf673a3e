"""Pipeline planning module.

Maps probed source streams onto a target container: what is copied, what is
re-encoded, what is dropped, and the stage list that performs it.
"""
