import asyncio
from pathlib import Path


class DirectorySink:
    """
    A `DurableSink` that writes each snapshot document to `<directory>/<id>.json`.
    File IO runs in the default executor so a slow disk does not block the loop.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _write(self, snapshot_id: str, pretty_json: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / f"{snapshot_id}.json"
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(pretty_json, encoding="utf-8")
        tmp.replace(target)

    async def save(self, snapshot_id: str, pretty_json: str):
        await asyncio.get_running_loop().run_in_executor(
            None, self._write, snapshot_id, pretty_json
        )
