"""
retention.queue - durable job queue: task envelope, storage backends,
producer client and the worker pool that drains it.
"""
