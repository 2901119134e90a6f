import typer
from pathlib import Path
from importlib.resources import files

import yaml

from geneflux.errors import GeneFluxError

app = typer.Typer(help="GeneFlux: differential expression of microarray / RNA expression matrices")


@app.command()
def init(path: Path = typer.Argument(Path("geneflux_config.yaml"), help="Where to write the template")):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("geneflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file", exists=True, dir_okay=False),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the GeneFlux pipeline described by a YAML config.
    """
    from geneflux.utils.cli_setup import configure_cli_display
    from geneflux.main import run_pipeline

    configure_cli_display(verbose=verbose)
    config_data = yaml.safe_load(config.read_text()) or {}

    try:
        run_pipeline(config=config_data)
    except GeneFluxError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
