#!/usr/bin/env python3
"""Emit the DDL for the station and profile tables the moderation API reads and writes."""

from __future__ import annotations

import argparse

STATUSES = ("unverified", "verified", "rejected", "reported")


def render_sql(*, stations_table: str, profiles_table: str) -> str:
    status_values = ", ".join(f"'{value}'" for value in STATUSES)
    return f"""-- Refillia station moderation schema

create table if not exists {profiles_table} (
  id uuid primary key,
  username text,
  email text
);

create table if not exists {stations_table} (
  id uuid primary key default gen_random_uuid(),
  name text not null,
  description text not null default '',
  landmark text,
  latitude double precision not null check (latitude between -90 and 90),
  longitude double precision not null check (longitude between -180 and 180),
  status text not null default 'unverified' check (status in ({status_values})),
  added_by uuid references {profiles_table} (id),
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create index if not exists {stations_table}_status_created_at_idx
  on {stations_table} (status, created_at desc);
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit the Refillia moderation schema DDL.")
    parser.add_argument("--stations-table", default="refill_stations")
    parser.add_argument("--profiles-table", default="user_profiles")
    args = parser.parse_args()

    print(render_sql(stations_table=args.stations_table, profiles_table=args.profiles_table))


if __name__ == "__main__":
    main()
