"""
Utility modules for the schedule engine.

This package contains shared utilities used across the application:
- logging_config: Logger setup for api/services/worker/jobs/db
- time_slot: Half-open UTC time ranges and their stored text form
- job_queue: Durable database-backed job queue
"""
