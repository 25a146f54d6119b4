"""
Source-control collaborators: failing-run feed, run logs, disposable branches, review submission.

Adapters: GitHub REST (`real`), on-disk mock (`mock`), local git worktrees (`local`).
"""
