"""
On-device embedding provider backed by sentence-transformers.

Model weights come from the Hugging Face Hub on first use and are
cached locally; later loads work offline. Files are fetched one at a
time so download progress can be reported to the caller.
"""

import logging
from pathlib import Path
from typing import Optional

from ..errors import EmbeddingError
from .base import ProgressCallback

logger = logging.getLogger(__name__)


def _wanted_file(name: str) -> bool:
    """Files needed to run a sentence-transformers model with PyTorch."""
    if name.startswith("1_Pooling/"):
        return True
    if "/" in name:
        return False  # onnx/, openvino/ and other runtime variants
    return name.endswith((".json", ".txt")) or name == "model.safetensors"


def fetch_model(
    repo_id: str,
    *,
    cache_dir: Optional[str] = None,
    progress: Optional[ProgressCallback] = None,
) -> str:
    """
    Return a local directory holding the model, downloading if needed.

    A local directory path is returned unchanged.

    Raises:
        EmbeddingError: If the model can't be found or downloaded
    """
    from huggingface_hub import HfApi, hf_hub_download, snapshot_download
    from huggingface_hub.utils import LocalEntryNotFoundError

    report = progress or (lambda fraction: None)

    if Path(repo_id).expanduser().is_dir():
        report(1.0)
        return str(Path(repo_id).expanduser())

    try:
        path = snapshot_download(repo_id, cache_dir=cache_dir, local_files_only=True)
        if Path(path, "modules.json").exists() or Path(path, "config.json").exists():
            logger.debug("Using cached model %s", repo_id)
            report(1.0)
            return path
    except LocalEntryNotFoundError:
        pass

    logger.info("Downloading embedding model %s", repo_id)
    report(0.0)
    info = HfApi().model_info(repo_id)
    files = [s.rfilename for s in (info.siblings or []) if _wanted_file(s.rfilename)]
    if not files:
        raise EmbeddingError(f"No usable model files in {repo_id}")

    for done, filename in enumerate(files, 1):
        hf_hub_download(repo_id, filename, cache_dir=cache_dir)
        report(done / len(files))
        logger.debug("Downloaded %s (%d/%d)", filename, done, len(files))

    return snapshot_download(repo_id, cache_dir=cache_dir, local_files_only=True)


class SentenceTransformerEmbedding:
    """
    Embedding provider using a local sentence-transformers model.

    The default all-MiniLM-L6-v2 model produces 384-dimension vectors.
    Construction downloads (if needed) and loads the model, so build
    instances off the UI/request thread.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        *,
        cache_dir: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        model_path = fetch_model(model_name, cache_dir=cache_dir, progress=progress)
        self._model = SentenceTransformer(model_path)
        self._dimension = self._model.get_sentence_embedding_dimension()

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self._model.encode(text, convert_to_numpy=True).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self._model.encode(texts, convert_to_numpy=True).tolist()
