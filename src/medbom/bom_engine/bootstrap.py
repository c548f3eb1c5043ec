from __future__ import annotations

"""
BOM engine bootstrap helpers.

`create_all()` only creates tables for models registered on the metadata, so the
CLI and tests import the whole model surface through here.
"""


def import_all_models() -> None:
    from medbom.bom_engine.models import bom as _bom  # noqa: F401
    from medbom.bom_engine.models import catalog as _catalog  # noqa: F401
    from medbom.bom_engine.models import configuration as _configuration  # noqa: F401
