import sys
import os
import argparse
import logging

# Add src to sys.path to allow imports
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from medbom.database import create_db_engine, create_session_factory, get_db_session, init_db
from medbom.config import get_settings
from medbom.bom_engine.fixtures import load_fixture, seed_catalog, seed_configurations
from medbom.models.base import Base

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("medbom.seeder")

def drop_all_tables(target_engine, force=False):
    """Drops all tables with safety check."""
    if not force:
        print("WARNING: You are about to DROP ALL DATA from the database.")
        response = input("Type 'yes' to confirm: ")
        if response.lower() != 'yes':
            logger.info("Operation cancelled.")
            sys.exit(0)

    logger.warning("Dropping all tables...")
    Base.metadata.drop_all(bind=target_engine)
    logger.info("All tables dropped.")

def main():
    parser = argparse.ArgumentParser(description="Seed the catalog, rules and configurations from a YAML fixture.")
    parser.add_argument("fixture", help="Path to the YAML fixture")
    parser.add_argument("--database-url", help="Database URL (default: MEDBOM_DATABASE_URL)")
    parser.add_argument("--skip-configurations", action="store_true", help="Seed only catalog and rules")
    parser.add_argument("--drop-all", action="store_true", help="Drop all tables before seeding (Dangerous!)")
    parser.add_argument("--force", action="store_true", help="Skip confirmation prompt for --drop-all")
    args = parser.parse_args()

    settings = get_settings()
    url = args.database_url or settings.DATABASE_URL
    logger.info(f"Seeding {url} from {args.fixture}")

    target_engine = create_db_engine(url)
    if args.drop_all:
        drop_all_tables(target_engine, force=args.force)

    init_db(create_tables=True, bind_engine=target_engine)
    session_factory = create_session_factory(target_engine)

    try:
        fixture = load_fixture(args.fixture)
        with get_db_session(session_factory) as session:
            seed_catalog(session, fixture)
            if not args.skip_configurations:
                ids = seed_configurations(session, fixture, created_by="seeder")
                logger.info(f"Configurations: {ids}")
        logger.info("Seeding completed successfully")
    except Exception as e:
        logger.error(f"Seeding failed: {e}", exc_info=True)
        sys.exit(1)

if __name__ == "__main__":
    main()
