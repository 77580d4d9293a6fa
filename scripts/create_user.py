import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bankadmin.config import BACKEND_SQLITE, CONFIG_ENV, load_config, resolve_config_path
from bankadmin.database import ShardDatabase
from bankadmin.errors import NotFound, ValidationError
from bankadmin.models import KycStatus


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user inside a local SQLite bank shard")
    parser.add_argument("bank", help="Key of the shard the user belongs to")
    parser.add_argument("email", help="Email address of the user")
    parser.add_argument("--full-name", default=None, help="Display name of the user")
    parser.add_argument("--admin", action="store_true", help="Grant administrator access")
    parser.add_argument("--manager", action="store_true", help="Grant the manager role")
    parser.add_argument("--superior-manager", action="store_true", help="Grant the superior manager role")
    parser.add_argument(
        "--kyc",
        default=KycStatus.NOT_STARTED.value,
        choices=[status.value for status in KycStatus],
        help="Initial KYC status",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the shard configuration (defaults to BANKADMIN_SHARDS_CONFIG or config/shards.yaml)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    config_path = resolve_config_path(args.config_path or os.getenv(CONFIG_ENV))
    config = load_config(config_path)

    try:
        shard = config.registry.get(args.bank)
    except NotFound as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if shard.backend != BACKEND_SQLITE or shard.path is None:
        print(f"Error: shard '{shard.key}' is not a local SQLite shard", file=sys.stderr)
        return 1

    database = ShardDatabase(shard.path)
    database.initialize()

    try:
        user = database.create_user(
            args.email,
            full_name=args.full_name,
            is_admin=args.admin or args.manager or args.superior_manager,
            is_manager=args.manager or args.superior_manager,
            is_superior_manager=args.superior_manager,
            kyc_status=args.kyc,
            bank_origin=shard.name,
        )
    except ValidationError as exc:  # duplicates, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user {user['id']} <{user['email']}> in {shard.name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
