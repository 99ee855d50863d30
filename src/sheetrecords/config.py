"""Config module to share export settings across all modules in sheetrecords."""

import logging
import sys
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)


class ExportSettings(BaseModel):
    """Styling and formatting applied by export sessions."""

    table_style: str = "TableStyleMedium9"
    date_format: str = "yyyy-mm-dd"
    datetime_format: str = "yyyy-mm-dd hh:mm:ss"
    # Add a dropdown list to columns of enum fields.
    enum_dropdowns: bool = True
    auto_fit_columns: bool = True
    min_column_width: Annotated[int, Field(ge=1)] = 10
    max_column_width: Annotated[int, Field(ge=1, le=255)] = 50

    @model_validator(mode="after")
    def order_of_widths(self) -> Self:
        if self.max_column_width < self.min_column_width:
            msg = (
                f"max_column_width ({self.max_column_width}) must not be smaller "
                f"than min_column_width ({self.min_column_width})."
            )
            raise ValueError(msg)
        return self


class SheetRecordsConfig(BaseModel):
    export: ExportSettings = ExportSettings()
    default_config: bool = False


# These parameters will be updated/set by load_config.
CONFIG = SheetRecordsConfig(default_config=True)
SETTINGS = CONFIG.export
CONFIG_PATH: Path | None = None


def load_config(
    config_file: Path | None = None, config: SheetRecordsConfig | None = None
):
    new_conf = {}
    new_conf["CONFIG_PATH"] = None
    if config_file is not None and not config_file.exists():
        logger.warning('Configuration file "%s" not found.', config_file)
    if (True if config_file is None else not config_file.exists()) and config is None:
        new_conf["CONFIG"] = SheetRecordsConfig(default_config=True)
        logger.debug("Initializing default config.")
    elif config_file and config is None:
        with config_file.open(mode="rb") as fp:
            conf = tomllib.load(fp)
        logger.debug("Config loaded from: %s", config_file)
        new_conf["CONFIG"] = SheetRecordsConfig(**conf)
        new_conf["CONFIG_PATH"] = config_file.resolve()
    else:
        new_conf["CONFIG"] = SheetRecordsConfig.model_validate_json(
            config.model_dump_json()
        )
        logger.debug("Refreshing global state of config.")

    new_conf["SETTINGS"] = new_conf["CONFIG"].export

    for name, value in new_conf.items():
        globals()[name] = value
