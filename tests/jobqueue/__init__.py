"""
Job Queue Test Suite.

- State transition tests (complete, fail, cancel, retry)
- Claim tests (ordering, delays, concurrent claimers)
- Singleton tests (throttle, debounce, keys)
- Completion and archive pipeline tests
- Worker and maintenance loop tests
- Options, config and CLI tests
"""
