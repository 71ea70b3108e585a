"""
Processor — 生存シグナル

ポーリングが成功するたびにファイルへ ISO-8601 のタイムスタンプを書く。
外部のスーパーバイザはこのファイルが古くなったら (既定 120 秒)
プロセスが固まったと判断する。

    python -m orderflow.processor.liveness /tmp/processor-liveness
    → 新しければ終了コード 0、古ければ 1
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_PATH = "/tmp/processor-liveness"
DEFAULT_STALE_AFTER = 120.0


class LivenessFile:
    def __init__(self, path: str | os.PathLike = DEFAULT_PATH):
        self.path = Path(path)

    def mark(self, now: datetime | None = None) -> None:
        """タイムスタンプを書き込む。読み手が途中状態を見ないよう置き換えで書く。"""
        now = now or datetime.now(timezone.utc)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(now.isoformat())
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read(self) -> datetime | None:
        try:
            value = self.path.read_text().strip()
            return datetime.fromisoformat(value)
        except (OSError, ValueError):
            return None

    def is_stale(self, threshold: float = DEFAULT_STALE_AFTER, now: datetime | None = None) -> bool:
        """ファイルがない・読めない場合も stale とみなす。"""
        last = self.read()
        if last is None:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return (now - last).total_seconds() > threshold


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    path = argv[0] if argv else os.environ.get("LIVENESS_FILE", DEFAULT_PATH)
    threshold = float(os.environ.get("LIVENESS_STALE_AFTER", DEFAULT_STALE_AFTER))
    liveness = LivenessFile(path)
    if liveness.is_stale(threshold):
        print(f"stale: last heartbeat {liveness.read()}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
