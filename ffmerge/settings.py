import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


_DEFAULT_ROOT = Path(tempfile.gettempdir()) / "ffmerge"


@dataclass
class Settings:
    PORT: int
    WORK_DIR: Path
    ARTIFACT_DIR: Path
    LOGS_DIR: Optional[Path]
    ARTIFACT_TTL_SECONDS: int
    SWEEP_INTERVAL_SECONDS: int
    DOWNLOAD_GRACE_SECONDS: float
    FETCH_TIMEOUT_SECONDS: float
    MAX_AUDIO_MB: int
    MAX_IMAGE_MB: int
    FFMPEG_BINARY: str
    FFMPEG_TIMEOUT_SECONDS: int
    LOG_LEVEL: str

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: Path) -> Path:
            return Path(os.getenv(name, str(default)))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_float(name: str, default: float) -> float:
            return float(os.getenv(name, str(default)))

        port = env_int("PORT", 3000)
        if not (1 <= port <= 65535):
            raise ValueError("PORT must be 1-65535")

        ttl = env_int("ARTIFACT_TTL_SECONDS", 300)
        if ttl < 1:
            raise ValueError("ARTIFACT_TTL_SECONDS must be >= 1")

        interval = env_int("SWEEP_INTERVAL_SECONDS", 60)
        if interval < 0:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be >= 0")

        grace = env_float("DOWNLOAD_GRACE_SECONDS", 2.0)
        if grace < 0:
            raise ValueError("DOWNLOAD_GRACE_SECONDS must be >= 0")

        fetch_timeout = env_float("FETCH_TIMEOUT_SECONDS", 60.0)
        if fetch_timeout <= 0:
            raise ValueError("FETCH_TIMEOUT_SECONDS must be > 0")

        max_audio = env_int("MAX_AUDIO_MB", 100)
        max_image = env_int("MAX_IMAGE_MB", 50)
        if max_audio < 1 or max_image < 1:
            raise ValueError("MAX_AUDIO_MB and MAX_IMAGE_MB must be >= 1")

        ffmpeg_timeout = env_int("FFMPEG_TIMEOUT_SECONDS", 0)
        if ffmpeg_timeout < 0:
            raise ValueError("FFMPEG_TIMEOUT_SECONDS must be >= 0")

        work_dir = env_path("WORK_DIR", _DEFAULT_ROOT / "work")
        artifact_dir = env_path("ARTIFACT_DIR", _DEFAULT_ROOT / "artifacts")
        logs_env = os.getenv("LOGS_DIR")
        logs_dir = Path(logs_env) if logs_env else None

        # Startup deletes every untracked file in WORK_DIR and ARTIFACT_DIR.
        if work_dir.resolve() == artifact_dir.resolve():
            raise ValueError("WORK_DIR and ARTIFACT_DIR must be different directories")
        if logs_dir is not None:
            resolved_logs = logs_dir.resolve()
            for name, managed in (("WORK_DIR", work_dir), ("ARTIFACT_DIR", artifact_dir)):
                if resolved_logs.is_relative_to(managed.resolve()):
                    raise ValueError(f"LOGS_DIR must not be inside {name}")

        return cls(
            PORT=port,
            WORK_DIR=work_dir,
            ARTIFACT_DIR=artifact_dir,
            LOGS_DIR=logs_dir,
            ARTIFACT_TTL_SECONDS=ttl,
            SWEEP_INTERVAL_SECONDS=interval,
            DOWNLOAD_GRACE_SECONDS=grace,
            FETCH_TIMEOUT_SECONDS=fetch_timeout,
            MAX_AUDIO_MB=max_audio,
            MAX_IMAGE_MB=max_image,
            FFMPEG_BINARY=os.getenv("FFMPEG_BINARY", "ffmpeg"),
            FFMPEG_TIMEOUT_SECONDS=ffmpeg_timeout,
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def max_audio_bytes(self) -> int:
        return self.MAX_AUDIO_MB * 1024 * 1024

    @property
    def max_image_bytes(self) -> int:
        return self.MAX_IMAGE_MB * 1024 * 1024

    def ensure_dirs(self) -> None:
        self.WORK_DIR = self.WORK_DIR.resolve()
        self.WORK_DIR.mkdir(parents=True, exist_ok=True)
        self.ARTIFACT_DIR = self.ARTIFACT_DIR.resolve()
        self.ARTIFACT_DIR.mkdir(parents=True, exist_ok=True)
        if self.LOGS_DIR is not None:
            self.LOGS_DIR = self.LOGS_DIR.resolve()
            self.LOGS_DIR.mkdir(parents=True, exist_ok=True)
