from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from medbom import __version__
from medbom.config import get_settings

app = typer.Typer(add_completion=False, help="MedBOM configuration-driven BOM engine CLI")


@app.callback()
def _root(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    settings = get_settings()
    logging.basicConfig(
        level=(log_level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


def _open_database(database_url: str):
    from medbom.database import create_db_engine, create_session_factory, init_db

    engine = create_db_engine(database_url)
    init_db(create_tables=True, bind_engine=engine)
    return create_session_factory(engine)


@app.command("init-db")
def init_database(
    database_url: Optional[str] = typer.Option(None, help="Database URL (default: DATABASE_URL)"),
    fixture: Optional[Path] = typer.Option(None, help="YAML fixture to seed the catalog from"),
) -> None:
    """Create the tables and optionally seed the catalog and rules from a fixture."""
    from medbom.bom_engine.fixtures import load_fixture, seed_catalog
    from medbom.database import get_db_session

    url = database_url or get_settings().DATABASE_URL
    session_factory = _open_database(url)
    if fixture is not None:
        data = load_fixture(fixture)
        with get_db_session(session_factory) as session:
            seed_catalog(session, data)
        typer.echo(f"Seeded catalog from {fixture}")
    typer.echo(f"Database ready: {url}")


@app.command()
def validate(
    fixture: Path = typer.Argument(..., exists=True, help="YAML fixture file"),
    configuration: str = typer.Option(..., "--configuration", "-c", help="Configuration code"),
) -> None:
    """Validate a fixture configuration against the fixture's rules."""
    from medbom.bom_engine.catalog.reader import CatalogReader
    from medbom.bom_engine.fixtures import load_fixture
    from medbom.bom_engine.rules.repository import RuleScope
    from medbom.bom_engine.services.config_validator import ConfigurationValidator
    from medbom.exceptions import BOMEngineError

    try:
        data = load_fixture(fixture)
        config = data.configuration(configuration)
        catalog = CatalogReader(data.build_catalog())
        category_id = config.category_id or catalog.assembly_category(
            config.assembly_id, datetime.utcnow()
        )
        result = ConfigurationValidator(data.build_rule_repository()).validate(
            config.selections,
            RuleScope(assembly_id=config.assembly_id, category_id=category_id),
        )
    except BOMEngineError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2, default=str), err=True)
        raise typer.Exit(2)

    typer.echo(
        json.dumps(
            {
                "configuration": configuration,
                "is_valid": result.is_valid,
                "errors": [v.to_dict() for v in result.errors],
                "warnings": [v.to_dict() for v in result.warnings],
                "derived_attributes": result.derived_attributes,
            },
            indent=2,
            default=str,
        )
    )
    if not result.is_valid:
        raise typer.Exit(1)


@app.command()
def generate(
    fixture: Path = typer.Argument(..., exists=True, help="YAML fixture file"),
    configuration: str = typer.Option(..., "--configuration", "-c", help="Configuration code"),
    database_url: str = typer.Option(
        "sqlite:///:memory:", help="Database the BOM is stored in (default: throwaway in-memory)"
    ),
    generated_by: str = typer.Option("cli", help="Actor recorded on the BOM"),
) -> None:
    """Generate a BOM for a fixture configuration and print it as JSON."""
    from medbom.bom_engine.catalog.reader import SQLCatalogProvider
    from medbom.bom_engine.events.event_bus import EventBus
    from medbom.bom_engine.events.listeners import register_logging_listeners
    from medbom.bom_engine.fixtures import load_fixture, seed_catalog, seed_configurations
    from medbom.bom_engine.rules.repository import SQLRuleRepository
    from medbom.bom_engine.services.generation_service import build_generation_service
    from medbom.database import get_db_session
    from medbom.exceptions import BOMEngineError

    bus = EventBus()
    register_logging_listeners(bus)
    try:
        data = load_fixture(fixture)
        data.configuration(configuration)
        session_factory = _open_database(database_url)
        with get_db_session(session_factory) as session:
            seed_catalog(session, data)
            configuration_id = seed_configurations(session, data, generated_by)[configuration]

        service = build_generation_service(
            session_factory,
            SQLCatalogProvider(session_factory),
            SQLRuleRepository(session_factory),
            event_bus=bus,
        )
        try:
            result = service.generate(configuration_id, generated_by=generated_by)
        finally:
            service.close()
    except BOMEngineError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2, default=str), err=True)
        raise typer.Exit(2)

    typer.echo(json.dumps(result.to_dict(), indent=2, default=str))


@app.command("db")
def db_command(
    action: str = typer.Argument(..., help="upgrade|downgrade|current|history"),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """Database migrations via Alembic."""
    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]
    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


def main() -> None:
    app()
