import argparse
from pathlib import Path

from . import __version__
from .boundary import TransactionManager
from .database import get_engine, init_database
from .env import Settings, load_env
from .logger import get_logger, reset_logger
from .usecase import SCENARIOS, UserUsecase


def build_usecase(settings: Settings) -> UserUsecase:
    reset_logger()
    logger = get_logger(
        level=settings.log_level,
        log_dir=settings.log_dir,
        enable_file=settings.log_dir is not None,
    )
    engine = init_database(settings.db_path, lock_timeout=settings.lock_timeout)
    manager = TransactionManager(engine, logger=logger)
    isolation_manager = None
    if settings.shared_cache:
        shared = get_engine(settings.db_path, lock_timeout=settings.lock_timeout, shared_cache=True)
        isolation_manager = TransactionManager(shared, logger=logger)
    return UserUsecase.build(
        manager,
        isolation_manager=isolation_manager,
        logger=logger,
        line_up_timeout=settings.lock_timeout,
        max_retries=settings.max_retries,
    )


def cmd_run(args: argparse.Namespace, settings: Settings) -> None:
    usecase = build_usecase(settings)
    results = usecase.run_all()
    print("Summary:")
    for result in results:
        line = f" - {result.name}: {result.outcome}"
        if result.error:
            line += f" ({result.error})"
        print(line)
    usecase.logger.log_metrics_summary()


def cmd_list(args: argparse.Namespace, settings: Settings) -> None:
    print("Scenarios:")
    for name in SCENARIOS:
        print(f" - {name}")


def cmd_scenario(args: argparse.Namespace, settings: Settings) -> None:
    usecase = build_usecase(settings)
    user = usecase.create_user(args.name)
    usecase.service.add_address(user.id, "Seoul")
    result = usecase.run_scenario(args.scenario, user.id)
    print(f"Outcome: {result.outcome}")
    if result.detail:
        print(f"Detail: {result.detail}")
    if result.error:
        print(f"Error: {result.error}")


def main(argv=None):
    # Load .env if present (TRANSACTIONAL_DB_PATH, TRANSACTIONAL_LOG_LEVEL, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="transactional", description="Transaction pitfalls, reproduced and fixed")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Path to SQLite database (default: TRANSACTIONAL_DB_PATH or data/transactional.db)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")

    subparsers = parser.add_subparsers(dest="command")
    run = subparsers.add_parser("run", help="Run every scenario in order (default)")
    run.set_defaults(func=cmd_run)

    lst = subparsers.add_parser("list", help="List scenario names")
    lst.set_defaults(func=cmd_list)

    scn = subparsers.add_parser("scenario", help="Run one scenario against a freshly created user")
    scn.add_argument("scenario", choices=list(SCENARIOS), help="Scenario name")
    scn.add_argument("--name", default="Alice", help="Name of the user to create (default: Alice)")
    scn.set_defaults(func=cmd_scenario)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    settings = Settings.from_env()
    if args.db:
        settings.db_path = Path(args.db)
    if args.log_level:
        settings.log_level = args.log_level.upper()

    func = getattr(args, "func", cmd_run)
    func(args, settings)


if __name__ == "__main__":
    main()
