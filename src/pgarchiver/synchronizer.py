"""Grant the local network access to the local PostgreSQL server."""

from pathlib import Path

import structlog

from pgarchiver.exceptions import NetworkResolutionError
from pgarchiver.hba import HBADatabaseType, HBARule, ensure_host_rule_exists, is_skip_auth
from pgarchiver.network import fetch_local_cidr, find_hostname_local_address
from pgarchiver.server import ServerControl

logger = structlog.get_logger(__name__)


async def grant_local_network_access(
    server: ServerControl,
    *,
    ssl: bool,
    database_type: HBADatabaseType,
    hostname: str,
    auth_method: str,
    database: str | None = None,
    username: str | None = None,
    pgdata: Path | str | None = None,
) -> bool:
    """Add an HBA rule opening the server to the local network of hostname.

    When pgdata is given, PostgreSQL is not running yet: the rule goes to
    pgdata/pg_hba.conf and no reload is requested.

    Args:
        server: Local server, used for the HBA path and reload
        ssl: Emit a hostssl rule instead of host
        database_type: Database field kind
        hostname: Name this node is reachable at
        auth_method: Authentication method, or a skip method
        database: Database name for DBNAME rules
        username: User name, or None for all users
        pgdata: Data directory of a server that is not running

    Returns:
        True when the rule is in place (or HBA edits are skipped), False when
        the local network could not be determined and nothing was granted

    Raises:
        NetworkResolutionError: No local address for hostname, unless HBA
            edits are skipped
        RuleFileError: The HBA file could not be read or written
        ServerControlError: The HBA path query or the reload failed
    """
    skip = is_skip_auth(auth_method)

    try:
        address = await find_hostname_local_address(hostname)
    except NetworkResolutionError as e:
        if skip:
            logger.warning(
                "Failed to find IP address for hostname, HBA edits are skipped",
                hostname=hostname,
                error=str(e),
            )
            return True
        logger.error("Failed to find IP address for hostname", hostname=hostname, error=str(e))
        raise

    try:
        cidr = fetch_local_cidr(address)
    except NetworkResolutionError as e:
        logger.warning(
            "Failed to determine network configuration, skipping HBA settings",
            address=address,
            error=str(e),
        )
        return skip

    logger.debug("HBA: adding CIDR from hostname", hostname=hostname, address=address, cidr=cidr)
    logger.info("Granting connection privileges", cidr=cidr)

    rule = HBARule(
        ssl=ssl,
        database_type=database_type,
        database=database,
        username=username,
        host=cidr,
        auth_method=auth_method,
    )

    if pgdata is not None:
        hba_path = Path(pgdata) / "pg_hba.conf"
    else:
        hba_path = await server.get_hba_file_path()

    # with a skip method this only logs the rule we would have written
    ensure_host_rule_exists(hba_path, rule)

    if pgdata is None and not skip:
        await server.reload_configuration()

    return True
