import logging
from importlib.resources import files
from pathlib import Path

import pandas as pd
import polars as pl
import typer
import yaml

from proteomm.main import run_pipeline
from proteomm.utils.utils import configure_logging

# Keep dataframe display small in any explicit print/log.
pl.Config.set_tbl_rows(10)
pl.Config.set_tbl_cols(20)
pd.set_option("display.max_rows", 10)
pd.set_option("display.max_columns", 20)
pd.set_option("display.width", 160)

app = typer.Typer(help="proteomm: EigenMS normalization, model-based imputation and multi-dataset DE for peptide data")


@app.command()
def init(path: Path = Path("proteomm_config.yaml")):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("proteomm.templates").joinpath("user_template.yaml").read_text()
    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log identifiers of excluded entries"),
):
    """
    Run the proteomm pipeline described by a YAML config.
    """
    configure_logging(logging.DEBUG if verbose else logging.INFO)
    config_data = yaml.safe_load(config.read_text())
    if not isinstance(config_data, dict):
        raise typer.BadParameter(f"{config} does not contain a YAML mapping.")
    run_pipeline(config=config_data)


if __name__ == "__main__":
    app()
