# /nearbuy/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for pipeline monitoring.
# Centralizing them here makes them easy to find and manage.

# Inbound
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status', 'reason'])
inbound_events_counter = Counter('inbound_events_total', 'Normalized inbound webhook events', ['event_type'])
duplicate_messages_counter = Counter('duplicate_inbound_messages_total', 'Inbound messages dropped as duplicates')
status_updates_counter = Counter('message_status_updates_total', 'Delivery status updates received', ['status'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])

# Queue and jobs
jobs_enqueued_counter = Counter('jobs_enqueued_total', 'Jobs enqueued', ['kind', 'lane', 'result'])
job_outcomes_counter = Counter('job_outcomes_total', 'Job executions by outcome', ['kind', 'outcome'])
job_deferrals_counter = Counter('job_deferrals_total', 'Jobs re-enqueued without consuming an attempt', ['kind', 'reason'])
job_duration_histogram = Histogram('job_duration_seconds', 'Job execution time in seconds', ['kind'])
queue_depth_gauge = Gauge('queue_depth', 'Jobs waiting per lane', ['lane'])

# Outbound
outbound_messages_counter = Counter('whatsapp_outbound_messages_total', 'Outbound WhatsApp sends', ['status', 'message_type'])
batches_counter = Counter('notification_batches_total', 'Notification batches by final status', ['status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
