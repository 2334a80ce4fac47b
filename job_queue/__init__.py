"""
Job Queue — Durable priority queue, dead letter store and consumer loops.

- Producers enqueue typed jobs with a priority and an optional not-before time
- Workers claim the highest-priority ready job, ack or fail it
- Failed jobs retry with exponential backoff until their attempt budget runs out
- Exhausted jobs are recorded in the dead letter store
- Redis sorted sets (production) and in-process heaps (dev/test)
"""
