#!/usr/bin/env python3
"""
planner_gateway.py - Turns an opportunity into an executable plan

Talks to the remote agent service over HTTP:

    POST {base_url}/api/agents/terminal  {task, context: {shell, os}}
        -> {success, result: {terminalCommand, reasoning, riskLevel, requiresSudo}}
    POST {base_url}/api/agents/search    {userQuery, maxResults}
        -> {success, result: {finalAnswer}}
    POST {base_url}/api/agents/code      {prompt, language, context}
        -> {result: {code, explanation, suggestedFilename}}

Any transport or protocol failure on the planning call degrades to "no plan"
with a warning; search and code generation are optional extras whose failure
leaves the plan intact. No retries: the next scheduled cycle is the retry.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from opportunity_detector import OptimizationOpportunity
from state_store import GeneratedScript, Plan, SystemProfile

logger = logging.getLogger(__name__)

RISK_LEVELS = ("low", "medium", "high")
INSIGHT_CHARS = 200


class PlannerError(Exception):
    """Planning service unreachable, erroring, or speaking nonsense."""


class PlannerGateway:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        shell: str = "bash",
        os_name: str = "linux",
        search_enabled: bool = True,
        codegen_enabled: bool = True,
        scripts_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.shell = shell
        self.os_name = os_name
        self.search_enabled = search_enabled
        self.codegen_enabled = codegen_enabled
        self.scripts_dir = Path(scripts_dir) if scripts_dir else None
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "PlannerGateway":
        return cls(
            base_url=config.planner.base_url,
            timeout=config.planner.timeout,
            shell=config.planner.shell,
            os_name=config.planner.os,
            search_enabled=config.planner.search_enabled,
            codegen_enabled=config.planner.codegen_enabled,
            scripts_dir=config.paths.scripts_path,
        )

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def call_agent(self, endpoint: str, body: Dict[str, Any], require_success: bool = True) -> Dict[str, Any]:
        """POST to an agent endpoint and return its `result` object.

        Raises PlannerError on non-2xx, non-JSON, success=false or a missing
        result. requests exceptions are re-raised as PlannerError.
        """
        url = f"{self.base_url}/api/agents/{endpoint}"
        try:
            resp = self.session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise PlannerError(f"Agent {endpoint} unreachable: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise PlannerError(f"Agent {endpoint} failed: {resp.status_code} {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise PlannerError(f"Agent {endpoint} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PlannerError(f"Agent {endpoint} returned {type(data).__name__}, expected object")
        success = data.get("success")
        if success is False or (require_success and not success):
            raise PlannerError(data.get("error") or f"Agent {endpoint} returned success=false")

        result = data.get("result")
        if not isinstance(result, dict):
            raise PlannerError(f"Agent {endpoint} response has no result object")
        return result

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(self, opportunity: OptimizationOpportunity, profile: SystemProfile) -> Optional[Plan]:
        """Ask the planning service for a command. None on any failure."""
        task = f"{opportunity.suggestion}. System context: {json.dumps(profile.to_dict())}"
        logger.info(f"Planning: \"{task[:50]}...\"")
        try:
            result = self.call_agent("terminal", {
                "task": task,
                "context": {"shell": self.shell, "os": self.os_name},
            })
        except PlannerError as e:
            logger.warning(f"No plan for {opportunity.type}: {e}")
            return None

        command = result.get("terminalCommand")
        if not isinstance(command, str) or not command.strip():
            logger.warning(f"No plan for {opportunity.type}: response lacks terminalCommand")
            return None

        risk = str(result.get("riskLevel") or "").strip().lower()
        plan = Plan(
            command=command.strip(),
            reasoning=str(result.get("reasoning") or ""),
            risk_level=risk if risk in RISK_LEVELS else "unknown",
            requires_sudo=result.get("requiresSudo") is True,
        )
        logger.info(f"Suggested: {plan.command[:100]}")
        logger.info(f"Risk: {plan.risk_level} | Sudo: {plan.requires_sudo}")

        if self.search_enabled:
            plan.search_insights = self.search_best_practices(opportunity)
        if self.codegen_enabled and (opportunity.severity == "high" or plan.risk_level != "low"):
            plan.script = self.generate_script(opportunity, profile)
        return plan

    def search_best_practices(self, opportunity: OptimizationOpportunity) -> Optional[str]:
        query = f"{profile_distro()} {opportunity.type} optimization best practices"
        logger.info(f"Searching for: \"{query}\"")
        try:
            result = self.call_agent("search", {"userQuery": query, "maxResults": 5})
        except PlannerError as e:
            logger.warning(f"Search failed for {opportunity.type}: {e}")
            return None
        answer = result.get("finalAnswer")
        return answer[:INSIGHT_CHARS] if isinstance(answer, str) and answer else None

    def generate_script(
        self,
        opportunity: OptimizationOpportunity,
        profile: SystemProfile
    ) -> Optional[GeneratedScript]:
        """Request an idempotent remediation script. Auxiliary only."""
        prompt = (
            f"Write an idempotent, non-interactive bash script that will: {opportunity.suggestion}. "
            f"Problem: {opportunity.description}."
        )
        logger.info(f"Generating code: \"{prompt[:50]}...\"")
        try:
            result = self.call_agent("code", {
                "prompt": prompt,
                "language": self.shell,
                "context": {
                    "os": self.os_name,
                    "hostname": profile.hostname,
                    "kernel": profile.kernel_version,
                },
            }, require_success=False)
        except PlannerError as e:
            logger.warning(f"Code generation failed for {opportunity.type}: {e}")
            return None

        code = result.get("code")
        if not isinstance(code, str) or not code.strip():
            logger.warning(f"Code generation for {opportunity.type} returned no code")
            return None

        script = GeneratedScript(
            filename=safe_filename(result.get("suggestedFilename"), opportunity.type),
            code=code,
            explanation=str(result.get("explanation") or ""),
        )
        script.path = self._write_script(script)
        return script

    def _write_script(self, script: GeneratedScript) -> Optional[str]:
        if self.scripts_dir is None:
            return None
        target = self.scripts_dir / script.filename
        try:
            self.scripts_dir.mkdir(parents=True, exist_ok=True)
            target.write_text(script.code, encoding="utf-8")
            os.chmod(target, 0o644)
        except OSError as e:
            logger.warning(f"Could not write generated script {target}: {e}")
            return None
        logger.info(f"Generated script saved to {target}")
        return str(target)


def safe_filename(suggested: Any, opt_type: str) -> str:
    """Basename of the suggested filename, restricted to a safe charset."""
    name = Path(suggested).name if isinstance(suggested, str) else ""
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name).lstrip(".")
    return name or f"{opt_type}-remediation.sh"


def profile_distro() -> str:
    """Pretty distro name for search queries, e.g. 'Ubuntu'."""
    try:
        with open("/etc/os-release", encoding="utf-8") as f:
            for line in f:
                if line.startswith("NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return "Linux"
