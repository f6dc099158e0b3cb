"""
Registry of the integrations and transformations this deployment ships.

Definitions live in code so they are reviewed and versioned with the
application. Recipes are written in SQL understood by both PostgreSQL and
SQLite so development databases can run them unchanged.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterable, Mapping, Sequence

from .definitions import (
    ColumnSpec,
    ColumnType,
    IntegrationDefinition,
    SourceFormat,
    TransformationDefinition,
)
from .errors import UnknownDefinitionError
from .validation import exact_length, matches

_FIVE_DIGITS = matches(r"\d{5}", "ZIP code must be 5 digits")
_THREE_DIGITS = matches(r"\d{3}", "ZIP3 must be 3 digits")
_ZONE_CODE = matches(r"[0-9A-Za-z]{1,3}", "Zone code must be 1-3 alphanumeric characters")


US_ZIPS = IntegrationDefinition(
    id="us-zips",
    name="US ZIP Codes",
    description="ZIP code reference data with population, coordinates, and demographics (uszips.csv).",
    category="demographics",
    source_format=SourceFormat.CSV,
    file_types=("csv",),
    target_schema="workspace",
    target_table="us_zips",
    columns=(
        ColumnSpec("zip", ColumnType.STRING, nullable=False, validator=_FIVE_DIGITS, description="5-digit ZIP code"),
        ColumnSpec("city", ColumnType.STRING, max_length=100, description="Primary city name"),
        ColumnSpec("state_id", ColumnType.STRING, validator=exact_length(2), description="State abbreviation"),
        ColumnSpec("state_name", ColumnType.STRING, max_length=100, description="Full state name"),
        ColumnSpec("county_name", ColumnType.STRING, max_length=100, description="County name"),
        ColumnSpec("lat", ColumnType.DECIMAL, description="Latitude"),
        ColumnSpec("lng", ColumnType.DECIMAL, description="Longitude"),
        ColumnSpec("population", ColumnType.INT, description="Population estimate"),
        ColumnSpec("density", ColumnType.DECIMAL, description="Population density"),
        ColumnSpec("timezone", ColumnType.STRING, max_length=50, description="Timezone"),
    ),
    unique_key=("zip",),
)

GAZ_ZCTA = IntegrationDefinition(
    id="gaz-zcta",
    name="GAZ ZCTA National",
    description="Census Bureau ZCTA gazetteer with centroids and land/water areas (pipe-delimited).",
    category="demographics",
    source_format=SourceFormat.PIPE,
    file_types=("txt",),
    target_schema="workspace",
    target_table="gaz_zcta_national",
    columns=(
        ColumnSpec("geoid", ColumnType.STRING, nullable=False, validator=_FIVE_DIGITS, description="5-digit ZCTA"),
        ColumnSpec("aland", ColumnType.INT, description="Land area in square meters"),
        ColumnSpec("awater", ColumnType.INT, description="Water area in square meters"),
        ColumnSpec("aland_sqmi", ColumnType.DECIMAL, description="Land area in square miles"),
        ColumnSpec("awater_sqmi", ColumnType.DECIMAL, description="Water area in square miles"),
        ColumnSpec("intptlat", ColumnType.DECIMAL, description="Latitude of centroid"),
        ColumnSpec("intptlong", ColumnType.DECIMAL, description="Longitude of centroid"),
    ),
    unique_key=("geoid",),
)

UPS_ZONES = IntegrationDefinition(
    id="ups-zones",
    name="UPS Zone Charts",
    description="UPS zone charts by origin ZIP3, exported to CSV with one row per destination ZIP3.",
    category="carriers",
    source_format=SourceFormat.CSV,
    file_types=("csv",),
    target_schema="workspace",
    target_table="ups_zones",
    columns=(
        ColumnSpec("origin_zip", ColumnType.STRING, nullable=False, validator=_THREE_DIGITS),
        ColumnSpec("dest_zip", ColumnType.STRING, nullable=False, validator=_THREE_DIGITS),
        ColumnSpec("ground_zone", ColumnType.STRING, validator=_ZONE_CODE, description="UPS Ground"),
        ColumnSpec("three_day_zone", ColumnType.STRING, validator=_ZONE_CODE, description="UPS 3 Day Select"),
        ColumnSpec("two_day_zone", ColumnType.STRING, validator=_ZONE_CODE, description="UPS 2nd Day Air"),
        ColumnSpec("two_day_am_zone", ColumnType.STRING, validator=_ZONE_CODE, description="UPS 2nd Day Air A.M."),
        ColumnSpec("nda_saver_zone", ColumnType.STRING, validator=_ZONE_CODE, description="Next Day Air Saver"),
        ColumnSpec("next_day_zone", ColumnType.STRING, validator=_ZONE_CODE, description="UPS Next Day Air"),
    ),
    unique_key=("origin_zip", "dest_zip"),
    max_recorded_errors=100,
)

UPS_GROUND_SERVICE = IntegrationDefinition(
    id="ups-ground-service",
    name="UPS Ground Service (5-digit)",
    description="UPS Ground transit days from one 5-digit origin to every 5-digit destination (headerless CSV).",
    category="carriers",
    source_format=SourceFormat.CSV,
    has_header=False,
    file_types=("csv",),
    target_schema="workspace",
    target_table="ups_ground_service_zip5",
    columns=(
        ColumnSpec("origin_zip", ColumnType.STRING, nullable=False, validator=_FIVE_DIGITS),
        ColumnSpec("dest_zip", ColumnType.STRING, nullable=False, validator=_FIVE_DIGITS),
        ColumnSpec("dest_state", ColumnType.STRING, validator=exact_length(2), description="Destination state"),
        ColumnSpec("transit_days", ColumnType.INT, description="Transit days"),
    ),
    unique_key=("origin_zip", "dest_zip"),
    max_recorded_errors=100,
)

USPS_3D_BASE = IntegrationDefinition(
    id="usps-3d-base",
    name="USPS 3D Base Service",
    description="USPS service standards directory: days from each 3-digit origin to each 3-digit destination.",
    category="carriers",
    source_format=SourceFormat.CSV,
    file_types=("csv",),
    target_schema="workspace",
    target_table="usps_3d_base_service",
    columns=(
        ColumnSpec("origin_zip_code", ColumnType.STRING, nullable=False, validator=_THREE_DIGITS),
        ColumnSpec("destination_zip_code", ColumnType.STRING, nullable=False, validator=_THREE_DIGITS),
        ColumnSpec("pri_service_standard", ColumnType.INT, description="Priority Mail"),
        ColumnSpec("gal_service_standard", ColumnType.INT, description="Ground Advantage"),
        ColumnSpec("mkt_service_standard", ColumnType.INT, description="Marketing Mail"),
        ColumnSpec("per_service_standard", ColumnType.INT, description="Periodicals"),
        ColumnSpec("pkg_service_standard", ColumnType.INT, description="Package Services"),
        ColumnSpec("fcm_service_standard", ColumnType.INT, description="First-Class Mail"),
        ColumnSpec("gah_service_standard", ColumnType.INT, description="Ground Advantage Heavy"),
        ColumnSpec("pfc_service_standard", ColumnType.INT, description="Priority First-Class"),
    ),
    unique_key=("origin_zip_code", "destination_zip_code"),
    max_recorded_errors=100,
)


ZIP3_REFERENCE_SQL = """
INSERT INTO reference.zip3_reference (
    zip3, total_population, zip_count, primary_state, primary_city,
    pop_weighted_lat, pop_weighted_lng, geo_centroid_lat, geo_centroid_lng,
    total_land_sqmi, total_water_sqmi
)
SELECT
    keys.zip3,
    COALESCE(d.total_population, 0),
    COALESCE(d.zip_count, 0),
    (
        SELECT z.state_id FROM workspace.us_zips z
        WHERE SUBSTR(z.zip, 1, 3) = keys.zip3 AND z.state_id IS NOT NULL
        GROUP BY z.state_id ORDER BY COUNT(*) DESC, z.state_id LIMIT 1
    ),
    (
        SELECT z.city FROM workspace.us_zips z
        WHERE SUBSTR(z.zip, 1, 3) = keys.zip3 AND z.city IS NOT NULL
        ORDER BY COALESCE(z.population, 0) DESC, z.zip LIMIT 1
    ),
    d.pop_weighted_lat,
    d.pop_weighted_lng,
    c.geo_centroid_lat,
    c.geo_centroid_lng,
    COALESCE(c.total_land_sqmi, 0),
    COALESCE(c.total_water_sqmi, 0)
FROM (
    SELECT SUBSTR(zip, 1, 3) AS zip3 FROM workspace.us_zips WHERE zip IS NOT NULL AND LENGTH(zip) = 5
    UNION
    SELECT SUBSTR(geoid, 1, 3) FROM workspace.gaz_zcta_national WHERE geoid IS NOT NULL AND LENGTH(geoid) = 5
) keys
LEFT JOIN (
    SELECT
        SUBSTR(zip, 1, 3) AS zip3,
        SUM(population) AS total_population,
        COUNT(*) AS zip_count,
        CASE WHEN SUM(population) > 0 THEN SUM(lat * population) / SUM(population) ELSE AVG(lat) END
            AS pop_weighted_lat,
        CASE WHEN SUM(population) > 0 THEN SUM(lng * population) / SUM(population) ELSE AVG(lng) END
            AS pop_weighted_lng
    FROM workspace.us_zips
    WHERE zip IS NOT NULL AND LENGTH(zip) = 5
    GROUP BY SUBSTR(zip, 1, 3)
) d ON d.zip3 = keys.zip3
LEFT JOIN (
    SELECT
        SUBSTR(geoid, 1, 3) AS zip3,
        SUM(aland_sqmi) AS total_land_sqmi,
        SUM(awater_sqmi) AS total_water_sqmi,
        CASE WHEN SUM(aland_sqmi) > 0 THEN SUM(intptlat * aland_sqmi) / SUM(aland_sqmi) ELSE AVG(intptlat) END
            AS geo_centroid_lat,
        CASE WHEN SUM(aland_sqmi) > 0 THEN SUM(intptlong * aland_sqmi) / SUM(aland_sqmi) ELSE AVG(intptlong) END
            AS geo_centroid_lng
    FROM workspace.gaz_zcta_national
    WHERE geoid IS NOT NULL AND LENGTH(geoid) = 5
    GROUP BY SUBSTR(geoid, 1, 3)
) c ON c.zip3 = keys.zip3
"""

# Sources rank by precision: aggregated 5-digit UPS Ground and the USPS
# directory are priority 1, zone-chart estimates priority 2. For each ZIP3
# pair and service the lowest priority wins, then the fewest transit days.
# 5-digit Ground rows collapse to the most common transit days per ZIP3 pair.
# Ground zones carry transit days in the last digit ("045" is five days);
# express zones carry them in the first digit.
DELIVERY_MATRIX_SQL = """
INSERT INTO reference.delivery_matrix (
    origin_zip3, dest_zip3, carrier_code, service_code, transit_days, delivery_score, zone
)
SELECT
    r.origin_zip3,
    r.dest_zip3,
    r.carrier_code,
    r.service_code,
    r.transit_days,
    CASE
        WHEN r.transit_days <= 1 THEN 100
        WHEN r.transit_days = 2 THEN 95
        WHEN r.transit_days = 3 THEN 60
        WHEN r.transit_days = 4 THEN 20
        ELSE 0
    END,
    r.zone
FROM (
    SELECT
        s.origin_zip3,
        s.dest_zip3,
        s.carrier_code,
        s.service_code,
        s.transit_days,
        s.zone,
        ROW_NUMBER() OVER (
            PARTITION BY s.origin_zip3, s.dest_zip3, s.carrier_code, s.service_code
            ORDER BY s.source_priority, s.transit_days
        ) AS pick
    FROM (
        SELECT
            g.origin_zip3,
            g.dest_zip3,
            'UPS' AS carrier_code,
            'GND' AS service_code,
            g.transit_days,
            CAST(NULL AS TEXT) AS zone,
            1 AS source_priority
        FROM (
            SELECT
                c.origin_zip3,
                c.dest_zip3,
                c.transit_days,
                ROW_NUMBER() OVER (
                    PARTITION BY c.origin_zip3, c.dest_zip3 ORDER BY c.hits DESC, c.transit_days
                ) AS pick
            FROM (
                SELECT
                    SUBSTR(origin_zip, 1, 3) AS origin_zip3,
                    SUBSTR(dest_zip, 1, 3) AS dest_zip3,
                    transit_days,
                    COUNT(*) AS hits
                FROM workspace.ups_ground_service_zip5
                WHERE transit_days IS NOT NULL
                GROUP BY SUBSTR(origin_zip, 1, 3), SUBSTR(dest_zip, 1, 3), transit_days
            ) c
        ) g
        WHERE g.pick = 1
        UNION ALL
        SELECT
            u.origin_zip,
            u.dest_zip,
            'UPS',
            u.service_code,
            CASE
                WHEN u.service_code = 'GND' AND u.zone = '045' THEN 5
                WHEN u.service_code = 'GND' THEN CAST(SUBSTR(u.zone, LENGTH(u.zone), 1) AS INTEGER)
                ELSE CAST(SUBSTR(u.zone, 1, 1) AS INTEGER)
            END,
            u.zone,
            2
        FROM (
            SELECT origin_zip, dest_zip, 'GND' AS service_code, ground_zone AS zone
            FROM workspace.ups_zones WHERE ground_zone IS NOT NULL AND ground_zone <> ''
            UNION ALL
            SELECT origin_zip, dest_zip, '3DS', three_day_zone
            FROM workspace.ups_zones WHERE three_day_zone IS NOT NULL AND three_day_zone <> ''
            UNION ALL
            SELECT origin_zip, dest_zip, '2DA', two_day_zone
            FROM workspace.ups_zones WHERE two_day_zone IS NOT NULL AND two_day_zone <> ''
            UNION ALL
            SELECT origin_zip, dest_zip, '2AM', two_day_am_zone
            FROM workspace.ups_zones WHERE two_day_am_zone IS NOT NULL AND two_day_am_zone <> ''
            UNION ALL
            SELECT origin_zip, dest_zip, 'NDS', nda_saver_zone
            FROM workspace.ups_zones WHERE nda_saver_zone IS NOT NULL AND nda_saver_zone <> ''
            UNION ALL
            SELECT origin_zip, dest_zip, 'NDA', next_day_zone
            FROM workspace.ups_zones WHERE next_day_zone IS NOT NULL AND next_day_zone <> ''
        ) u
        WHERE SUBSTR(u.zone, 1, 1) BETWEEN '0' AND '9'
          AND SUBSTR(u.zone, LENGTH(u.zone), 1) BETWEEN '0' AND '9'
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'PRI', pri_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE pri_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'GAL', gal_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE gal_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'MKT', mkt_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE mkt_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'PER', per_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE per_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'PKG', pkg_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE pkg_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'FCM', fcm_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE fcm_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'GAH', gah_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE gah_service_standard IS NOT NULL
        UNION ALL
        SELECT origin_zip_code, destination_zip_code, 'USPS', 'PFC', pfc_service_standard, NULL, 1
        FROM workspace.usps_3d_base_service WHERE pfc_service_standard IS NOT NULL
    ) s
    WHERE s.origin_zip3 IS NOT NULL
      AND s.dest_zip3 IS NOT NULL
      AND s.transit_days > 0
      AND s.dest_zip3 IN (SELECT zip3 FROM reference.zip3_reference)
) r
WHERE r.pick = 1
"""

ZIP3_REFERENCE = TransformationDefinition(
    id="zip3-reference",
    name="ZIP3 Reference",
    description="Aggregates 5-digit ZIP data into 3-digit ZIP reference with demographics and centroids.",
    target_schema="reference",
    target_table="zip3_reference",
    sources=("workspace.us_zips", "workspace.gaz_zcta_national"),
    sql=ZIP3_REFERENCE_SQL,
)

DELIVERY_MATRIX = TransformationDefinition(
    id="delivery-matrix",
    name="Delivery Matrix",
    description="Builds the carrier transit-time matrix by ZIP3 pair from UPS and USPS transit data.",
    target_schema="reference",
    target_table="delivery_matrix",
    sources=(
        "workspace.ups_ground_service_zip5",
        "workspace.ups_zones",
        "workspace.usps_3d_base_service",
        "reference.zip3_reference",
    ),
    dependencies=("zip3-reference",),
    sql=DELIVERY_MATRIX_SQL,
)


def get_integration_registry() -> Mapping[str, IntegrationDefinition]:
    integrations = (US_ZIPS, GAZ_ZCTA, UPS_ZONES, UPS_GROUND_SERVICE, USPS_3D_BASE)
    return OrderedDict((definition.id, definition) for definition in integrations)


def get_transformation_registry() -> Mapping[str, TransformationDefinition]:
    # Order matters: dependencies first.
    return OrderedDict((definition.id, definition) for definition in (ZIP3_REFERENCE, DELIVERY_MATRIX))


def get_integration(definition_id: str) -> IntegrationDefinition:
    registry = get_integration_registry()
    try:
        return registry[definition_id]
    except KeyError:
        raise UnknownDefinitionError(
            f"Unknown integration '{definition_id}'. Known integrations: {', '.join(registry)}"
        ) from None


def get_transformation(definition_id: str) -> TransformationDefinition:
    registry = get_transformation_registry()
    try:
        return registry[definition_id]
    except KeyError:
        raise UnknownDefinitionError(
            f"Unknown transformation '{definition_id}'. Known transformations: {', '.join(registry)}"
        ) from None


def resolve_transformations(
    identifiers: Sequence[str] | None = None,
    registry: Mapping[str, TransformationDefinition] | None = None,
) -> Iterable[TransformationDefinition]:
    """
    Map transformation ids to definitions, raising on unknowns; all of them when ``identifiers`` is empty.
    """
    registry = registry or get_transformation_registry()
    if not identifiers:
        return tuple(registry.values())
    unknown = sorted({identifier for identifier in identifiers if identifier not in registry})
    if unknown:
        raise UnknownDefinitionError("Unknown transformations requested: " + ", ".join(unknown) + ".")
    return tuple(registry[identifier] for identifier in identifiers)
