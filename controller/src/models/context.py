"""
Read-only state shared by every stage and step of one pipeline run.
"""

from pydantic import BaseModel, SecretStr
from typing import Dict, Optional, List

class PipelineContext(BaseModel):
    run_id: str
    ref: str = ""
    commit_sha: str = ""
    event: str = "push"
    repository: str = ""
    clone_url: Optional[str] = None
    source_dir: Optional[str] = None
    runner_os: str = "Linux"
    env: Dict[str, str] = {}
    secrets: Dict[str, SecretStr] = {}

    class Config:
        frozen = True

    @property
    def branch(self) -> str:
        # refs/heads/main -> main
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return self.ref

    def secret(self, name: str) -> str:
        value = self.secrets.get(name)
        return value.get_secret_value() if value is not None else ""

    def secret_values(self) -> List[str]:
        return [v.get_secret_value() for v in self.secrets.values() if v.get_secret_value()]

    def mask(self, text: Optional[str]) -> Optional[str]:
        """Replace every secret value in `text` with ***."""
        if not text:
            return text
        # Longest first so a secret containing another is masked whole
        for value in sorted(self.secret_values(), key=len, reverse=True):
            text = text.replace(value, "***")
        return text
