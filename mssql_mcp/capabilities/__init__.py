"""SQL Server version detection and feature capability flags."""
