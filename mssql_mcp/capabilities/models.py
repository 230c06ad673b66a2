"""SQL Server version and capability models."""

from pydantic import BaseModel, Field


class ServerVersion(BaseModel):
    """Parsed SQL Server version."""

    major: int = Field(..., description="Major version (15 = SQL Server 2019)")
    minor: int = Field(0, description="Minor version")
    build: int = Field(0, description="Build number")
    revision: int = Field(0, description="Revision number")
    full_version: str = Field(..., description="Dotted four-part version")
    product_name: str = Field(..., description="Product label, e.g. SQL Server 2019")


class ServerCapabilities(BaseModel):
    """Syntax and feature availability derived from the server version."""

    version: ServerVersion

    # SQL Server 2008 (10.x)
    supports_basic_features: bool = False

    # SQL Server 2012 (11.x)
    supports_sequences: bool = False
    supports_window_functions: bool = False
    supports_columnstore_indexes: bool = False
    supports_offset: bool = False

    # SQL Server 2014 (12.x)
    supports_in_memory_oltp: bool = False

    # SQL Server 2016 (13.x)
    supports_drop_if_exists: bool = False
    supports_json: bool = False
    supports_temporal: bool = False
    supports_always_encrypted: bool = False

    # SQL Server 2017 (14.x)
    supports_string_agg: bool = False
    supports_graph_db: bool = False

    # SQL Server 2019 (15.x)
    supports_utf8: bool = False

    # SQL Server 2022 (16.x)
    supports_json_extensions: bool = False
