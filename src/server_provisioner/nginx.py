"""Switch a project's nginx config from its HTTP bootstrap form to HTTPS.

Project templates ship with the HTTPS parts commented out. The rewrite
works on directives and brace-delimited blocks, commented or not, instead
of line patterns, so a block is always toggled as a whole.
"""

import re
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from server_provisioner.exceptions import ConfigRewriteError
from server_provisioner.utils.file import FileManager

logger = structlog.get_logger(__name__)

PLACEHOLDER_DOMAIN = "yourdomain.com"
HTTP_FALLBACK_MARKER = "For now, proxy to app"

_COMMENTED = re.compile(r"^(?P<indent>[ \t]*)#[ ]?(?P<body>.*)$")
_REDIRECT = re.compile(r"^return\s+301\s+https://\$host\$request_uri;\s*$")
_SERVER_OPEN = re.compile(r"^server\s*\{\s*$")
_SERVER_NAME = re.compile(r"^(?P<indent>[ \t]*)server_name\s+(?P<names>[^;]+);(?P<tail>.*)$")


def _code(line: str) -> str:
    """Return the directive part of a line without its trailing comment."""
    in_quote: Optional[str] = None
    for i, ch in enumerate(line):
        if in_quote:
            if ch == in_quote:
                in_quote = None
        elif ch in ("'", '"'):
            in_quote = ch
        elif ch == "#":
            return line[:i]
    return line


def _brace_delta(code: str) -> int:
    return code.count("{") - code.count("}")


def _uncomment(line: str) -> Tuple[bool, str]:
    match = _COMMENTED.match(line)
    if not match:
        return False, line
    return True, match.group("indent") + match.group("body")


class NginxConfig:
    """An nginx config file held as lines."""

    def __init__(self, text: str) -> None:
        self.lines: List[str] = text.splitlines()
        self.trailing_newline = text.endswith("\n")

    def render(self) -> str:
        text = "\n".join(self.lines)
        return text + "\n" if self.trailing_newline else text

    def is_balanced(self) -> bool:
        """True when every active block is closed and no brace is stray."""
        depth = 0
        for line in self.lines:
            depth += _brace_delta(_code(line))
            if depth < 0:
                return False
        return depth == 0

    def enable_https_redirect(self) -> int:
        """Uncomment the ``return 301 https://...`` redirect. Returns lines changed."""
        changed = 0
        for i, line in enumerate(self.lines):
            commented, body = _uncomment(line)
            if commented and _REDIRECT.match(body.strip()):
                self.lines[i] = body
                changed += 1
        return changed

    def disable_http_fallback(self, marker: str = HTTP_FALLBACK_MARKER) -> int:
        """Comment out the block that follows the HTTP fallback marker comment.

        The marker is a comment line; the next active block after it (usually
        ``location / { ... }``) is commented out up to its matching brace.
        """
        start = None
        for i, line in enumerate(self.lines):
            commented, body = _uncomment(line)
            if commented and marker in body:
                start = i + 1
                break
        if start is None:
            return 0

        changed = 0
        depth = 0
        opened = False
        for i in range(start, len(self.lines)):
            line = self.lines[i]
            if not line.strip() or _COMMENTED.match(line):
                continue
            code = _code(line)
            delta = _brace_delta(code)
            # closing brace of the enclosing server block
            if depth + delta < 0:
                break
            depth += delta
            self.lines[i] = self._comment(line)
            changed += 1
            if "{" in code:
                opened = True
            if opened and depth == 0:
                break
        return changed

    def enable_https_server(self) -> int:
        """Uncomment commented ``server { ... }`` blocks that listen on 443.

        Returns:
            Number of blocks enabled
        """
        enabled = 0
        i = 0
        while i < len(self.lines):
            commented, body = _uncomment(self.lines[i])
            if not (commented and _SERVER_OPEN.match(body.strip())):
                i += 1
                continue

            end = self._commented_block_end(i)
            if end is None:
                i += 1
                continue

            block = [_uncomment(line)[1] for line in self.lines[i : end + 1]]
            if any(re.search(r"\blisten\s+[^;]*443", _code(b)) for b in block):
                self.lines[i : end + 1] = block
                enabled += 1
            i = end + 1
        return enabled

    def set_server_names(
        self, names: List[str], placeholder: str = PLACEHOLDER_DOMAIN
    ) -> int:
        """Replace placeholder ``server_name`` values with real names."""
        changed = 0
        for i, line in enumerate(self.lines):
            match = _SERVER_NAME.match(line)
            if not match:
                continue
            current = match.group("names").split()
            if current and all(n == placeholder or n.endswith("." + placeholder) for n in current):
                self.lines[i] = (
                    f"{match.group('indent')}server_name {' '.join(names)};{match.group('tail')}"
                )
                changed += 1
        return changed

    def _commented_block_end(self, start: int) -> Optional[int]:
        depth = 0
        for i in range(start, len(self.lines)):
            line = self.lines[i]
            if not line.strip():
                continue
            commented, body = _uncomment(line)
            if not commented:
                return None
            depth += _brace_delta(_code(body))
            if depth == 0:
                return i
        return None

    @staticmethod
    def _comment(line: str) -> str:
        stripped = line.lstrip()
        indent = line[: len(line) - len(stripped)]
        return f"{indent}# {stripped}"


def enable_https(
    conf_path: Path,
    domain: str,
    include_www: bool,
    file_manager: FileManager,
) -> List[str]:
    """Rewrite a project's nginx config for HTTPS.

    The original is copied to ``<name>.backup`` before writing. A result
    that would not be a well-formed config is never written.

    Returns:
        Descriptions of the changes made

    Raises:
        ConfigRewriteError: If the file is missing or the rewrite fails
    """
    if not conf_path.exists():
        raise ConfigRewriteError(f"nginx.conf not found at {conf_path}")

    config = NginxConfig(file_manager.read_file(conf_path))
    if not config.is_balanced():
        raise ConfigRewriteError(f"{conf_path} has unbalanced braces; not touching it")

    names = [domain, f"www.{domain}"] if include_www else [domain]
    changes: List[str] = []
    if config.enable_https_redirect():
        changes.append("enabled HTTPS redirect")
    if config.disable_http_fallback():
        changes.append("disabled HTTP fallback block")
    if config.enable_https_server():
        changes.append("enabled HTTPS server block")
    if config.set_server_names(names):
        changes.append(f"server_name set to {' '.join(names)}")

    if not changes:
        logger.info("nginx_already_configured", path=str(conf_path))
        return changes

    if not config.is_balanced():
        raise ConfigRewriteError(
            f"Rewriting {conf_path} would leave unbalanced braces; file left unchanged"
        )

    file_manager.backup_file(conf_path, alongside=True)
    file_manager.write_file(conf_path, config.render())
    logger.info("nginx_config_updated", path=str(conf_path), changes=changes)
    return changes
