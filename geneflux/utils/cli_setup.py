import logging

from geneflux.utils.utils import setup_logging


def configure_cli_display(verbose: bool = False) -> None:
    """
    Configure logging and dataframe display defaults for a CLI run.

    Imported lazily from the CLI `run` command so `init` stays fast.
    """
    import pandas as pd
    import polars as pl

    setup_logging(logging.DEBUG if verbose else logging.INFO)

    # Cap dataframe display sizes for any explicit prints/logs.
    pl.Config.set_tbl_rows(10)
    pl.Config.set_tbl_cols(20)
    pl.Config.set_tbl_width_chars(160)

    pd.set_option("display.max_rows", 10)
    pd.set_option("display.max_columns", 20)
    pd.set_option("display.width", 160)
