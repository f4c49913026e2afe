"""GraphQL documents sent to the event indexer.

Every paginated collection gets its own ``first<Name>``/``skip<Name>`` pair so
an exhausted collection can be switched off (``first: 0``) while the others
keep paging. Windows are half-open: ``_gte`` start, ``_lt`` end.
"""

from __future__ import annotations

_GAME_FIELDS = """
    game {
      id
      league
      lockTime
      isFinal
      winnerSide
      winnerTeamCode
      teamACode
      teamBCode
      teamAName
      teamBName
    }
"""

_TRADE_FIELDS = """
    id
    user { id }
    type
    side
    timestamp
    txHash
    spotPriceBps
    avgPriceBps
    grossInDec
    grossOutDec
    feeDec
    netStakeDec
    netOutDec
    costBasisClosedDec
    realizedPnlDec
""" + _GAME_FIELDS

_BET_FIELDS = """
    id
    user { id }
    timestamp
    side
    amountDec
    grossAmount
    fee
    priceBps
    sharesOutDec
""" + _GAME_FIELDS

_CLAIM_FIELDS = """
    id
    user { id }
    amountDec
    timestamp
""" + _GAME_FIELDS


Q_META = """
query Meta {
  _meta { block { number } }
}
"""


def _collection(name: str, where: str, fields: str) -> str:
    cap = name[0].upper() + name[1:]
    return f"""
  {name}(
    first: $first{cap}
    skip: $skip{cap}
    where: {where}
    orderBy: timestamp
    orderDirection: desc
  ) {{{fields}  }}
"""


_LOCK_WINDOW = "game_: { league_in: $leagues, lockTime_gte: $start, lockTime_lt: $end }"
_PAGING_VARS = (
    "$firstTrades: Int!, $skipTrades: Int!, "
    "$firstBets: Int!, $skipBets: Int!, "
    "$firstClaims: Int!, $skipClaims: Int!"
)


def _activity_query(name: str, params: str, where: str) -> str:
    return (
        f"query {name}({params}, {_PAGING_VARS}) {{\n"
        "  _meta { block { number } }\n"
        + _collection("trades", where, _TRADE_FIELDS)
        + _collection("bets", where, _BET_FIELDS)
        + _collection("claims", where, _CLAIM_FIELDS)
        + "}\n"
    )


# One subject's activity in markets that lock inside the window.
Q_SUBJECT_ACTIVITY = _activity_query(
    "SubjectActivity",
    "$user: String!, $leagues: [String!]!, $start: BigInt!, $end: BigInt!",
    "{ user: $user, " + _LOCK_WINDOW + " }",
)

# Many subjects at once, same lock-time window.
Q_BULK_ACTIVITY = _activity_query(
    "BulkActivity",
    "$users: [String!]!, $leagues: [String!]!, $start: BigInt!, $end: BigInt!",
    "{ user_in: $users, " + _LOCK_WINDOW + " }",
)

# Raw activity feed windowed by event timestamp.
Q_RECENT_ACTIVITY = _activity_query(
    "RecentActivity",
    "$user: String!, $leagues: [String!]!, $start: BigInt!, $end: BigInt!",
    "{ user: $user, timestamp_gte: $start, timestamp_lt: $end, game_: { league_in: $leagues } }",
)


def _discovery_query(name: str, collection: str) -> str:
    cap = collection[0].upper() + collection[1:]
    return f"""
query {name}($leagues: [String!]!, $start: BigInt!, $end: BigInt!, $first{cap}: Int!, $skip{cap}: Int!) {{
  {collection}(
    first: $first{cap}
    skip: $skip{cap}
    where: {{ {_LOCK_WINDOW} }}
    orderBy: timestamp
    orderDirection: desc
  ) {{
    user {{ id }}
  }}
}}
"""


Q_SUBJECTS_FROM_TRADES = _discovery_query("SubjectsFromTrades", "trades")
Q_SUBJECTS_FROM_BETS = _discovery_query("SubjectsFromBets", "bets")

ACTIVITY_COLLECTIONS = ("trades", "bets", "claims")
