"""Actionable error catalog for ProxyUpgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or set `allow_insecure_http: true` only for trusted endpoints.",
    },
    "fetch_failed": {
        "what": "Could not fetch the release feed: {detail}",
        "next": "Check network access to `{url}` and retry later.",
    },
    "no_version_available": {
        "what": "No release provides a checksummed asset for {platform}.",
        "next": "Wait for a newer release or check `release_feed_url` in the configuration.",
    },
    "cannot_delete_current": {
        "what": "Version {version} is the current proxy version and cannot be deleted.",
        "next": "Upgrade or roll back to another version first.",
    },
    "version_not_installed": {
        "what": "Version {version} is not installed.",
        "next": "Run `proxyupgrader list` to see installed versions.",
    },
    "rollback_failed": {
        "what": "Rollback to version {version} failed: {detail}",
        "next": "No proxy is confirmed running. Inspect the proxy log and run `proxyupgrader start` to restart it.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
