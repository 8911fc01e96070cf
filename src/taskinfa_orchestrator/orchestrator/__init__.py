"""Task scheduling and execution coordination for CLI coding agents.

Why not Celery / APScheduler?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue already exists: it is the kanban board behind the REST API, and
the board is the only authority on task state. What this package adds is
the boundary between that board and long-running CLI agents (claude, codex)
working inside project checkouts:

- Per-project mutual exclusion on top of a global concurrency cap.
- Conditional claims arbitrated by the store, so several orchestrators can
  poll the same board without double-dispatching a task.
- Session bookkeeping and a retry budget driven only by agent exit codes.
- Lazy git checkout of projects before their first task runs.

A local broker would duplicate the board's state and still need all of
the above, so the loop is a plain poll -> claim -> run -> finalize cycle
with one thread per dispatch.
"""
