from dotenv import load_dotenv
load_dotenv()

import argparse

from core.config import settings
from core.database import build_engine, build_session_factory, init_db
from core.logger import logger
from models.media import Project


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the media pipeline tables")
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    parser.add_argument("--project-id", help="Also create this project if it does not exist")
    parser.add_argument("--organization-id", default=None)
    parser.add_argument("--name", default="")
    args = parser.parse_args()

    engine = build_engine(args.database_url)
    init_db(engine)

    if args.project_id:
        session_factory = build_session_factory(engine)
        with session_factory.begin() as session:
            if session.get(Project, args.project_id) is None:
                session.add(Project(id=args.project_id, organization_id=args.organization_id, name=args.name))
                logger.info(f"Project {args.project_id} created")
            else:
                logger.info(f"Project {args.project_id} already exists")

    engine.dispose()


if __name__ == "__main__":
    """
        python -m scripts.init_db --project-id demo --organization-id org-1

    Reads DATABASE_URL from .env unless --database-url is given.
    """
    main()
