"""Gated FIFO dispatch over a single shared state blob.

Queue state (pending order, in-flight set, finished history, task records and
the start-time log) is persisted as one JSON document under one store key.
Writers never hold a lock: each mutation re-reads the document, applies the
change to a fresh copy and writes it back, retrying the whole cycle when the
write fails or a versioned store reports a conflict.

Starting a task is gated by two independent policies, a concurrency ceiling
and a sliding-window start rate. Admission is never gated. A dispatch turn
claims at most one task, executes it without holding any state, records the
outcome and emits a wake so that the next turn runs as its own unit of work.
"""
