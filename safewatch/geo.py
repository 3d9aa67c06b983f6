import math

from safewatch import config

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_coordinates(latitude: float, longitude: float) -> bool:
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def map_link(latitude: float, longitude: float) -> str:
    return f"{config.MAP_LINK_BASE}{latitude:.6f},{longitude:.6f}"


def coord_key(latitude: float, longitude: float, precision: int) -> str:
    return f"{round(latitude, precision):.{precision}f},{round(longitude, precision):.{precision}f}"
