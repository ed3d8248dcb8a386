"""
AirWatch — Data Pipeline Package.

Components:
    - ingestion: sensor lookup adapter, channel feed client, reading validator
    - confidence: channel agreement scoring
    - buffers: per-sensor rolling PM2.5 and AQI buffers
    - aqi: NowCast and EPA breakpoint conversion
    - persistence: SQL buffer store and sensor bookkeeping
"""
