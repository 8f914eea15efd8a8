import ipaddress
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


@dataclass
class DownloadRecord:
    transfer_id: str
    file_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    download_type: str = "single"


def anonymize_ip(ip: str) -> str:
    """Zero the host part: last octet for IPv4, all but the first 48 bits for IPv6."""
    if not ip:
        return "unknown"
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return "unknown"
    prefix = 24 if address.version == 4 else 48
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return str(network.network_address)


def parse_user_agent(user_agent: Optional[str]) -> dict:
    if not user_agent:
        return {"browser": "Unknown", "os": "Unknown", "device": "desktop"}

    if "Firefox" in user_agent:
        browser = "Firefox"
    elif "Edg" in user_agent:
        browser = "Edge"
    elif "OPR" in user_agent or "Opera" in user_agent:
        browser = "Opera"
    elif "Chrome" in user_agent:
        browser = "Chrome"
    elif "Safari" in user_agent:
        browser = "Safari"
    else:
        browser = "Unknown"

    if "Windows" in user_agent:
        os_name = "Windows"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Mac OS" in user_agent:
        os_name = "macOS"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    device = "desktop"
    if "iPad" in user_agent or "Tablet" in user_agent:
        device = "tablet"
    elif "Mobile" in user_agent or "Android" in user_agent:
        device = "mobile"

    return {"browser": browser, "os": os_name, "device": device}


def record_download(session_factory: Callable[[], Session], record: DownloadRecord) -> bool:
    """Runs after the response; a failure here is logged and never reaches the caller."""
    db = session_factory()
    try:
        agent = parse_user_agent(record.user_agent)
        db.add(models.DownloadEvent(
            transfer_id=record.transfer_id,
            file_id=record.file_id,
            ip_address=anonymize_ip(record.ip),
            user_agent=(record.user_agent or "")[:500] or None,
            browser=agent["browser"],
            os=agent["os"],
            device=agent["device"],
            country=(record.country or None),
            download_type=record.download_type,
        ))
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record download for transfer {record.transfer_id}: {e}")
        return False
    finally:
        db.close()


def transfer_stats(db: Session, transfer_id: str) -> dict:
    events = (
        db.query(models.DownloadEvent)
        .filter(models.DownloadEvent.transfer_id == transfer_id)
        .order_by(models.DownloadEvent.downloaded_at.desc())
        .limit(1000)
        .all()
    )
    by_day = Counter(e.downloaded_at.date().isoformat() for e in events if e.downloaded_at)
    return {
        "total_downloads": len(events),
        "unique_ips": len({e.ip_address for e in events}),
        "browsers": dict(Counter(e.browser or "Unknown" for e in events)),
        "os": dict(Counter(e.os or "Unknown" for e in events)),
        "devices": dict(Counter(e.device or "desktop" for e in events)),
        "downloads_by_day": dict(by_day),
    }
