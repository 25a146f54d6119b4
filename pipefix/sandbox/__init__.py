"""
Sandboxed build -> lint -> test -> coverage validation of one candidate branch.

The validator is written against `SandboxProvider` / `SandboxEnvironment`; concrete
providers run commands as local subprocesses or inside a docker container.
"""
