"""
Autofix orchestration: at-most-once admission per run, the per-run pipeline state machine,
and the polling loop with a bounded worker pool.
"""
