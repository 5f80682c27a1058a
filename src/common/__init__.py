"""
Common building blocks shared by the workflow, completion and sweeper daemons.

This package contains reusable, domain-agnostic code:

- configuration loading (environment variables)
- the error hierarchy and boundary record types
- an HTTP object store client
- a reliable redis work queue
- retry/backoff helpers
- a small polling + threadpool daemon loop
- logging configuration
"""
