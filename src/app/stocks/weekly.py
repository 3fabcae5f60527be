"""Ranking for the weekly stats view.

Every tracked symbol plus the benchmark indexes is fetched in one
fetch-weekly-stock-data call; groups are then ranked by the chosen
timeframe and given the mean move of the members that came back.
"""

from __future__ import annotations

import datetime as dt

from src.app.stocks.schemas import (
    StockGroupRead,
    Timeframe,
    WeeklyGroup,
    WeeklyStats,
    WeeklyStockData,
)

BENCHMARK_SYMBOLS = ("QQQ", "IWM")


def change_for(data: WeeklyStockData, timeframe: Timeframe) -> float:
    """Percent change for ``timeframe``; a missing longer period counts as 0."""
    if timeframe == Timeframe.MONTH:
        return data.monthChangePercent or 0.0
    if timeframe == Timeframe.YTD:
        return data.ytdChangePercent or 0.0
    if timeframe == Timeframe.YEAR:
        return data.yearChangePercent or 0.0
    return data.changePercent


def weekly_symbols(groups: list[StockGroupRead]) -> list[str]:
    """Every tracked symbol once, in display order, then the benchmarks."""
    symbols = [stock.symbol for group in groups for stock in group.stocks]
    return list(dict.fromkeys([*symbols, *BENCHMARK_SYMBOLS]))


def build_weekly_stats(
    groups: list[StockGroupRead],
    data: dict[str, WeeklyStockData],
    week_end: dt.date,
    timeframe: Timeframe = Timeframe.WEEK,
    ascending: bool = False,
) -> WeeklyStats:
    ranked_groups = []
    for group in groups:
        members = [data[s.symbol] for s in group.stocks if s.symbol in data]
        members.sort(key=lambda d: change_for(d, timeframe), reverse=not ascending)
        average = sum(change_for(d, timeframe) for d in members) / len(members) if members else 0.0
        ranked_groups.append(
            WeeklyGroup(
                group_id=group.id,
                name=group.name,
                average_change_percent=round(average, 2),
                stocks=members,
            )
        )

    return WeeklyStats(
        week_end_date=week_end,
        timeframe=timeframe,
        groups=ranked_groups,
        benchmarks=[data[s] for s in BENCHMARK_SYMBOLS if s in data],
    )
