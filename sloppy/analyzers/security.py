"""Security: hardcoded secrets and well-known dangerous calls."""

from __future__ import annotations

import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer, scan_lines
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

RULES = [
    (
        re.compile(r"(?i)(?:api_key|apikey|secret|token|password|passwd)\s*[:=]\s*['\"]([a-zA-Z0-9_\-/+=]{16,})['\"]"),
        IssueType.SECURITY, Severity.CRITICAL, "Potential hardcoded secret or API key",
    ),
    (
        re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
        IssueType.SECURITY, Severity.CRITICAL, "Private key committed to the repository",
    ),
    (
        re.compile(r"(?<![\w.])(?:eval|exec)\s*\("),
        IssueType.SECURITY, Severity.HIGH, "Dynamic code execution via eval/exec",
    ),
    (
        re.compile(r"subprocess\.\w+\(.*shell\s*=\s*True"),
        IssueType.SECURITY, Severity.HIGH, "Shell command built with shell=True",
    ),
    (
        re.compile(r"pickle\.loads?\("),
        IssueType.SECURITY, Severity.MEDIUM, "Unpickling data can execute arbitrary code",
    ),
    (
        re.compile(r"yaml\.load\((?!.*Loader=)"),
        IssueType.SECURITY, Severity.MEDIUM, "yaml.load without an explicit safe Loader",
    ),
    (
        re.compile(r"\.innerHTML\s*=|dangerouslySetInnerHTML"),
        IssueType.SECURITY, Severity.MEDIUM, "Raw HTML injection point (XSS risk)",
    ),
    (
        re.compile(r"""(?i)\.execute\(\s*f?["'].*(?:SELECT|INSERT|UPDATE|DELETE)\b.*(?:\{|%s?["']\s*%|["']\s*\+)"""),
        IssueType.SECURITY, Severity.HIGH, "SQL built by string interpolation",
    ),
    (
        re.compile(r"verify\s*=\s*False"),
        IssueType.SECURITY, Severity.MEDIUM, "TLS certificate verification disabled",
    ),
]


class SecurityAnalyzer(BaseAnalyzer):
    name = "security"
    description = "Hardcoded secrets, injection sinks and unsafe deserialization"
    issue_types = (IssueType.SECURITY,)

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        return scan_lines(self, snapshot, RULES)
