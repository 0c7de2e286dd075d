# /convoflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for engine monitoring.
# Centralizing them here makes them easy to find and manage.

# Engine Metrics
executions_counter = Counter('workflow_executions_total', 'Executions reaching a terminal or suspended state', ['status'])
steps_counter = Counter('workflow_steps_total', 'Steps processed', ['step_type', 'status'])
step_duration_histogram = Histogram('workflow_step_duration_seconds', 'Step handler duration in seconds', ['step_type'])
checkpoint_retries_counter = Counter('workflow_checkpoint_retries_total', 'Retried store writes', ['operation'])
concurrent_rejections_counter = Counter('workflow_concurrent_rejections_total', 'Runs rejected because another runner holds the lease')

# Collaborator Metrics
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
lease_operations = Counter('lease_operations_total', 'Execution lease operations', ['operation', 'status'])
webhook_calls_counter = Counter('workflow_webhook_calls_total', 'Outbound webhook calls', ['status'])
