"""Pseudonymous project names for --hidden."""

from typing import Dict, List

GREEK = [
    "alpha", "beta", "gamma", "delta", "epsilon", "zeta", "eta", "theta",
    "iota", "kappa", "lambda", "mu", "nu", "xi", "omicron", "pi",
    "rho", "sigma", "tau", "upsilon", "phi", "chi", "psi", "omega",
]


def pseudonym(index: int) -> str:
    """Name for the index-th distinct project (1-based)."""
    if index <= len(GREEK):
        return f"project-{GREEK[index - 1]}"
    return f"project-{index:02}"


class ProjectNameMasker:
    """First-seen order mapping; stable for the lifetime of the instance."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._mapping: Dict[str, str] = {}

    def mask(self, name: str) -> str:
        if not self.enabled:
            return name
        alias = self._mapping.get(name)
        if alias is None:
            alias = pseudonym(len(self._mapping) + 1)
            self._mapping[name] = alias
        return alias

    def known(self) -> List[str]:
        return list(self._mapping)
