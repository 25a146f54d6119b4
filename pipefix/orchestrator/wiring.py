from __future__ import annotations

import os
from typing import Optional

import httpx

from pipefix.analysis.engine import FailureAnalyzer
from pipefix.classifier.rules import FailureClassifier
from pipefix.errors import ConfigurationError
from pipefix.llm.factory import build_gateway
from pipefix.orchestrator.orchestrator import AutofixOrchestrator
from pipefix.orchestrator.pipeline import AutofixPipeline
from pipefix.resilience.policy import ResiliencePolicy
from pipefix.sandbox.docker import DockerSandboxProvider
from pipefix.sandbox.frameworks import FRAMEWORKS, load_framework_overrides
from pipefix.sandbox.local import LocalSandboxProvider
from pipefix.sandbox.validator import SandboxValidator
from pipefix.scm.base import SourceControl
from pipefix.scm.github import GitHubSourceControl
from pipefix.scm.github_rest import GitHubRestClient
from pipefix.scm.local_git import LocalGitSourceControl
from pipefix.scm.mock_github import MockGitHub
from pipefix.settings import Settings
from pipefix.store.results import ResultStore
from pipefix.synthesis.candidates import CandidateValidator
from pipefix.synthesis.synthesizer import FixSynthesizer
from pipefix.telemetry.audit import AuditLogger


def _mock_source_dir(s: Settings) -> Optional[str]:
    if s.local_repo_path:
        return s.local_repo_path
    if s.sandbox_source_ref and os.path.isdir(s.sandbox_source_ref):
        return s.sandbox_source_ref
    return None


def build_mock_feed(s: Settings) -> MockGitHub:
    return MockGitHub(
        root_dir=s.mock_github_dir,
        source_dir=_mock_source_dir(s),
        repo=s.github_repo or "local/mock",
        public_base_url=s.public_base_url,
    )


def build_scm(s: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> SourceControl:
    if s.github_mode == "real":
        token, repo = s.require_github_credentials()
        client = GitHubRestClient(
            token=token,
            repo=repo,
            api_base=s.github_api_base,
            timeout_s=s.github_timeout_s,
            transport=transport,
        )
        return GitHubSourceControl(client=client, base_branch=s.github_base_branch)
    if s.github_mode == "local":
        if not s.local_repo_path:
            raise ConfigurationError("PIPEFIX_LOCAL_REPO_PATH is required for github_mode=local")
        return LocalGitSourceControl(
            repo_path=s.local_repo_path,
            worktree_root=s.local_worktree_root,
            feed=build_mock_feed(s),
        )
    if s.github_mode == "mock":
        return build_mock_feed(s)
    raise ConfigurationError(f"unsupported github_mode: {s.github_mode}")


def build_sandbox_validator(s: Settings) -> SandboxValidator:
    if s.sandbox_mode == "docker":
        provider = DockerSandboxProvider(command_timeout_s=s.sandbox_command_timeout_s)
    elif s.sandbox_mode == "local":
        provider = LocalSandboxProvider(command_timeout_s=s.sandbox_command_timeout_s)
    else:
        raise ConfigurationError(f"unsupported sandbox_mode: {s.sandbox_mode}")
    frameworks = load_framework_overrides(s.frameworks_path) if s.frameworks_path else dict(FRAMEWORKS)
    return SandboxValidator(
        provider=provider,
        base_image=s.sandbox_base_image,
        frameworks=frameworks,
        command_timeout_s=s.sandbox_command_timeout_s,
        # Provisioning is retried; validation outcomes never are.
        resilience=ResiliencePolicy.from_settings("sandbox", s),
    )


def build_orchestrator(
    s: Settings,
    *,
    store: Optional[ResultStore] = None,
    audit: Optional[AuditLogger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AutofixOrchestrator:
    """Wire every collaborator from settings. Missing credentials fail here, not mid-run."""
    audit = audit or AuditLogger(s.audit_log_path, secrets=s.secret_values())
    store = store or ResultStore(db_path=s.results_db_path)
    scm = build_scm(s, transport=transport)
    scm_policy = ResiliencePolicy.from_settings("scm", s)
    gateway = build_gateway(s, transport=transport)
    classifier = FailureClassifier()
    pipeline = AutofixPipeline(
        scm=scm,
        analyzer=FailureAnalyzer(gateway=gateway, classifier=classifier),
        synthesizer=FixSynthesizer(gateway=gateway),
        candidates=CandidateValidator(
            scm=scm,
            validator=build_sandbox_validator(s),
            min_coverage=s.min_coverage_percent,
            scm_policy=scm_policy,
        ),
        classifier=classifier,
        scm_policy=scm_policy,
        audit=audit,
        parallel_validation=s.parallel_validation,
        max_parallel_validations=s.max_parallel_validations,
    )
    return AutofixOrchestrator(
        scm=scm,
        pipeline=pipeline,
        store=store,
        audit=audit,
        scm_policy=scm_policy,
        max_concurrent_fixes=s.max_concurrent_fixes,
        poll_interval_s=s.poll_interval_s,
        max_runs_per_cycle=s.max_runs_per_cycle,
        results_history=s.results_history,
    )
