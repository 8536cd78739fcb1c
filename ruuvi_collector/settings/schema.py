"""
Pydantic schemas for the collector configuration file.
Defines the InfluxDB sink parameters, the polling interval and the
device name to hardware address mapping.
"""

import re
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAC_PATTERN = re.compile(r'^([0-9A-Fa-f]{2}[:-]?){5}([0-9A-Fa-f]{2})$')
DEFAULT_INFLUXDB_PORT = 8086


def validate_mac_address(mac_address: str) -> bool:
    """
    Validate MAC address format.

    Accepts colon, dash or no separators.
    """
    return bool(MAC_PATTERN.match(mac_address.strip()))


def normalize_mac_address(mac_address: str) -> str:
    """
    Normalize MAC address to uppercase with colon separators.

    Args:
        mac_address: MAC address to normalize

    Returns:
        str: Normalized MAC address, e.g. "F2:2D:EB:37:8A:D4"

    Raises:
        ValueError: If the address does not hold six bytes
    """
    if not validate_mac_address(mac_address):
        raise ValueError(f"Invalid MAC address format: {mac_address}")

    clean_mac = ''.join(c for c in mac_address.upper() if c.isalnum())
    return ':'.join(clean_mac[i:i+2] for i in range(0, 12, 2))


class CollectorConfig(BaseModel):
    """Root structure of the collector JSON file."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    bucket: str = Field(..., min_length=1, description="InfluxDB bucket name")
    measurement: str = Field(..., min_length=1, description="InfluxDB measurement name")
    host: str = Field(..., min_length=1, description="InfluxDB URL or host name")
    port: int = Field(DEFAULT_INFLUXDB_PORT, ge=1, le=65535, description="Port used when host has no scheme")
    org: str = Field(..., min_length=1, description="InfluxDB organization")
    token: str = Field(..., min_length=1, description="InfluxDB authentication token")
    tags: Dict[str, str] = Field(..., description="Device name to hardware address")
    interval: float = Field(..., gt=0, description="Polling interval in seconds")

    @field_validator('bucket', 'measurement', 'host', 'org', 'token')
    @classmethod
    def strip_and_require(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('value cannot be blank')
        return v.strip()

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Normalize addresses and reject empty names or duplicate addresses."""
        if not v:
            raise ValueError('at least one device must be configured')

        normalized: Dict[str, str] = {}
        owners: Dict[str, str] = {}
        for name, address in v.items():
            if not name.strip():
                raise ValueError('device name cannot be empty')
            mac = normalize_mac_address(address)
            if mac in owners:
                raise ValueError(f'address {mac} configured for both {owners[mac]} and {name}')
            owners[mac] = name
            normalized[name] = mac
        return normalized

    @property
    def influx_url(self) -> str:
        """Full InfluxDB URL; a bare host gets http and the configured port."""
        if "://" in self.host:
            return self.host
        return f"http://{self.host}:{self.port}"

    def redacted(self) -> dict:
        """Dump for display with the token masked."""
        data = self.model_dump()
        data['token'] = '***'
        return data
