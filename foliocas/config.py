from __future__ import annotations

import json
import pathlib
from dataclasses import asdict, dataclass, fields

from foliocas.quota import QuotaPolicy

CONFIG_FILE_NAME = ".foliocas_conf.json"


@dataclass(frozen=True)
class FolioConfig:
    """Settings of one folio root.

    Attributes:
        default_quota_limit: Byte limit given to folders bootstrapped without
            an explicit limit.
        store_timeout: Seconds a single store read or write may take before
            the mutation fails with `StoreUnavailable`.
        quota_tolerance: Bytes of drift between recorded usage and the sum of
            tracked entries that `reconcile_quota()` leaves alone.
        quota_policy: Whether deletes give quota back, see
            [`QuotaPolicy`][foliocas.quota.QuotaPolicy].
        tree_max_depth: How deep `Locator.tree()` descends.
    """

    default_quota_limit: int = 100 * 1024 * 1024
    store_timeout: float = 30.0
    quota_tolerance: int = 1024
    quota_policy: QuotaPolicy = QuotaPolicy.RETAIN
    tree_max_depth: int = 10

    def to_dict(self) -> dict:
        data = asdict(self)
        data["quota_policy"] = self.quota_policy.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> FolioConfig:
        known = {field.name for field in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        values = dict(data)
        if "quota_policy" in values:
            values["quota_policy"] = QuotaPolicy(values["quota_policy"])
        return cls(**values)


def config_path(root: pathlib.Path) -> pathlib.Path:
    return root.joinpath(CONFIG_FILE_NAME)


def import_config(root: pathlib.Path) -> FolioConfig:
    """Load the config saved in `root`.

    Raises:
        FileNotFoundError: If `root` holds no config.
    """
    path = config_path(root)
    if not path.is_file():
        raise FileNotFoundError("No config file found")

    return FolioConfig.from_dict(json.loads(path.read_text()))


def write_config(root: pathlib.Path, config: FolioConfig) -> None:
    path = config_path(root)
    if path.exists():
        raise FileExistsError("Overwriting existing config may cause loss of data")

    path.write_text(json.dumps(config.to_dict(), indent=2))
