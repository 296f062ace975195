# blueprint/bundler.py
"""
Archive bundler: a generated file set plus session data -> one buffer.

Output is deterministic for identical inputs: entries are sorted by path and
zip members carry a fixed timestamp and mode.
"""

import io
import json
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from blueprint.config import EXPORT_FORMATS
from blueprint.generator import GeneratedArtifact
from blueprint.modules import ModuleSpec

# earliest timestamp a zip entry can carry
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

EXTENSIONS: Dict[str, str] = {
    "archive": "zip",
    "raw-structured": "json",
    "plain-document": "md",
}


@dataclass
class Bundle:
    data: bytes
    content_type: str
    extension: str
    files: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=True, default=str) + "\n"


def session_metadata(session: Dict[str, Any], version: str, generated_at: str,
                     modules: Sequence[ModuleSpec]) -> Dict[str, Any]:
    return {
        "session_id": session.get("id"),
        "name": session.get("name"),
        "status": session.get("status"),
        "current_phase": session.get("current_phase"),
        "version": version,
        "generated_at": generated_at,
        "modules": [m.name for m in modules],
    }


def answers_document(answers: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "phase": a.get("phase_number"),
            "question_id": a.get("question_id"),
            "question": a.get("question_text"),
            "answer": a.get("answer_text"),
            "type": a.get("answer_type"),
        }
        for a in answers
    ]


class ArchiveBundler:
    def __init__(self, compression: int = zipfile.ZIP_DEFLATED):
        self.compression = compression

    def collect(self, artifacts: Sequence[GeneratedArtifact], session: Dict[str, Any],
                answers: Sequence[Dict[str, Any]], modules: Sequence[ModuleSpec],
                version: str, generated_at: str) -> List[GeneratedArtifact]:
        """Artifacts plus the answer and project documents, sorted and de-duplicated by path."""
        extra = [
            GeneratedArtifact("config/answers.json", _dumps(answers_document(answers)), "config"),
            GeneratedArtifact("config/project.json",
                              _dumps(session_metadata(session, version, generated_at, modules)),
                              "config"),
        ]
        by_path: Dict[str, GeneratedArtifact] = {}
        for art in list(artifacts) + extra:
            by_path[art.path.lstrip("/")] = art
        return [by_path[p] for p in sorted(by_path)]

    def bundle(self, fmt: str, artifacts: Sequence[GeneratedArtifact], session: Dict[str, Any],
               answers: Sequence[Dict[str, Any]], modules: Sequence[ModuleSpec],
               ai_docs: Dict[str, str], version: str, generated_at: str) -> Bundle:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"unsupported export format: {fmt!r}")
        files = self.collect(artifacts, session, answers, modules, version, generated_at)
        if fmt == "archive":
            data = self.to_zip(files)
        elif fmt == "raw-structured":
            data = self.to_json(files, session, answers, modules, ai_docs, version, generated_at)
        else:
            data = self.to_markdown(files, session, version)
        return Bundle(data, EXPORT_FORMATS[fmt], EXTENSIONS[fmt], [f.path for f in files])

    def to_zip(self, files: Sequence[GeneratedArtifact]) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=self.compression) as zf:
            for art in files:
                info = zipfile.ZipInfo(art.path, date_time=ZIP_EPOCH)
                info.compress_type = self.compression
                info.external_attr = 0o644 << 16
                zf.writestr(info, art.data)
        return buf.getvalue()

    @staticmethod
    def to_json(files: Sequence[GeneratedArtifact], session: Dict[str, Any],
                answers: Sequence[Dict[str, Any]], modules: Sequence[ModuleSpec],
                ai_docs: Dict[str, str], version: str, generated_at: str) -> bytes:
        doc = {
            "project": session_metadata(session, version, generated_at, modules),
            "answers": answers_document(answers),
            "modules": [m.to_dict() for m in modules],
            "documents": dict(ai_docs),
            "files": [{"path": f.path, "kind": f.kind, "content": f.content} for f in files],
        }
        return _dumps(doc).encode("utf-8")

    @staticmethod
    def to_markdown(files: Sequence[GeneratedArtifact], session: Dict[str, Any],
                    version: Optional[str]) -> bytes:
        name = session.get("name") or "Untitled project"
        out = [f"# {name}\n\n**Version**: {version}\n"]
        for f in files:
            out.append(f"\n---\n\n<!-- file: {f.path} -->\n\n")
            if f.path.endswith(".md"):
                out.append(f.content.rstrip("\n") + "\n")
            else:
                out.append(f"```\n{f.content.rstrip()}\n```\n")
        return "".join(out).encode("utf-8")
