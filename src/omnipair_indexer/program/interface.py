"""Omnipair program binary interface: instructions, events, accounts.

Discriminators follow the Anchor convention and are derived, not hardcoded:
    instruction: sha256("global:<snake_case_name>")[:8]
    event:       sha256("event:<PascalCaseName>")[:8]
    account:     sha256("account:<PascalCaseName>")[:8]

Events reach us either as "Program data: <base64>" log lines (emit!) or as a
self-CPI whose data is EVENT_IX_TAG + event discriminator + payload (emit_cpi!).
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

from omnipair_indexer.program.borsh import EMPTY, Struct

DISCRIMINATOR_SIZE = 8

# Anchor's event-CPI instruction tag (sha256("anchor:event")[:8], byte-reversed).
EVENT_IX_TAG = bytes.fromhex("e445a52e51cb9a1d")

# Companion programs referenced by Omnipair instructions. Recognised so they can
# be left out of decoded account maps; never decoded themselves.
WELL_KNOWN_PROGRAMS = {
    "11111111111111111111111111111111": "system_program",
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA": "token_program",
    "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb": "token_2022_program",
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL": "associated_token_program",
    "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s": "metadata_program",
}


def is_companion_program(address: str) -> bool:
    return address in WELL_KNOWN_PROGRAMS


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _pascal_case(name: str) -> str:
    return name[0].upper() + name[1:]


def _sighash(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def instruction_discriminator(name: str) -> bytes:
    return _sighash("global", _snake_case(name))


def event_discriminator(name: str) -> bytes:
    return _sighash("event", _pascal_case(name))


def account_discriminator(name: str) -> bytes:
    return _sighash("account", _pascal_case(name))


# ──────────────────────────────────────────────
# Layouts
# ──────────────────────────────────────────────

EVENT_METADATA = Struct((("signer", "pubkey"), ("pair", "pubkey"), ("timestamp", "i64")))

_ADJUST_POSITION_ARGS = Struct((("amount", "u64"),))

_LIQUIDITY_EVENT = Struct(
    (
        ("amount0", "u64"),
        ("amount1", "u64"),
        ("liquidity", "u64"),
        ("reserve0", "u64"),
        ("reserve1", "u64"),
        ("total_supply", "u64"),
        ("metadata", EVENT_METADATA),
    )
)

# Account order shared by add/remove liquidity.
_LIQUIDITY_ACCOUNTS = (
    "pair",
    "rate_model",
    "futarchy_authority",
    "reserve0_vault",
    "reserve1_vault",
    "user_token0_account",
    "user_token1_account",
    "token0_mint",
    "token1_mint",
    "lp_mint",
    "user_lp_token_account",
    "user",
    "token_program",
    "token_2022_program",
    "associated_token_program",
    "system_program",
    "event_authority",
    "program",
)


@dataclass(frozen=True)
class InstructionSpec:
    """One program instruction: argument layout and positional account names."""

    name: str
    args: Struct
    accounts: tuple[str, ...]
    read_only: bool = False
    discriminator: bytes = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "discriminator", instruction_discriminator(self.name))


@dataclass(frozen=True)
class EventSpec:
    name: str
    layout: Struct
    discriminator: bytes = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "discriminator", event_discriminator(self.name))


@dataclass(frozen=True)
class AccountSpec:
    name: str
    layout: Struct
    discriminator: bytes = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "discriminator", account_discriminator(self.name))


_INSTRUCTION_SPECS = (
    InstructionSpec(
        "initialize",
        Struct(
            (
                ("swap_fee_bps", "u16"),
                ("half_life", "u64"),
                ("fixed_cf_bps", "u16"),
                ("params_hash", "bytes32"),
                ("version", "u8"),
            )
        ),
        (
            "deployer",
            "token0_mint",
            "token1_mint",
            "pair",
            "lp_mint",
            "rate_model",
            "futarchy_authority",
            "reserve0_vault",
            "reserve1_vault",
            "deployer_lp_token_account",
            "token_program",
            "token_2022_program",
            "associated_token_program",
            "system_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "addLiquidity",
        Struct(
            (
                ("amount0_in", "u64"),
                ("amount1_in", "u64"),
                ("min_liquidity_out", "u64"),
            )
        ),
        _LIQUIDITY_ACCOUNTS,
    ),
    InstructionSpec(
        "removeLiquidity",
        Struct(
            (
                ("liquidity_in", "u64"),
                ("min_amount0_out", "u64"),
                ("min_amount1_out", "u64"),
            )
        ),
        _LIQUIDITY_ACCOUNTS,
    ),
    InstructionSpec(
        "swap",
        Struct((("amount_in", "u64"), ("min_amount_out", "u64"))),
        (
            "pair",
            "rate_model",
            "futarchy_authority",
            "token_in_vault",
            "token_out_vault",
            "user_token_in_account",
            "user_token_out_account",
            "token_in_mint",
            "token_out_mint",
            "user",
            "token_program",
            "token_2022_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "addCollateral",
        _ADJUST_POSITION_ARGS,
        (
            "pair",
            "rate_model",
            "user_position",
            "collateral_vault",
            "user_collateral_token_account",
            "collateral_token_mint",
            "user",
            "token_program",
            "token_2022_program",
            "system_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "removeCollateral",
        _ADJUST_POSITION_ARGS,
        (
            "pair",
            "rate_model",
            "user_position",
            "collateral_vault",
            "user_collateral_token_account",
            "collateral_token_mint",
            "user",
            "token_program",
            "token_2022_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "borrow",
        _ADJUST_POSITION_ARGS,
        (
            "pair",
            "rate_model",
            "futarchy_authority",
            "user_position",
            "reserve_vault",
            "user_reserve_token_account",
            "reserve_token_mint",
            "user",
            "token_program",
            "token_2022_program",
            "associated_token_program",
            "system_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "repay",
        _ADJUST_POSITION_ARGS,
        (
            "pair",
            "rate_model",
            "user_position",
            "reserve_vault",
            "user_reserve_token_account",
            "reserve_token_mint",
            "user",
            "token_program",
            "token_2022_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "liquidate",
        EMPTY,
        (
            "pair",
            "rate_model",
            "futarchy_authority",
            "user_position",
            "user",
            "collateral_vault",
            "caller_token_account",
            "collateral_token_mint",
            "payer",
            "token_program",
            "token_2022_program",
            "system_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "flashloan",
        Struct((("amount0", "u64"), ("amount1", "u64"), ("data", "bytes"))),
        (
            "pair",
            "rate_model",
            "futarchy_authority",
            "reserve0_vault",
            "reserve1_vault",
            "receiver_token0_account",
            "receiver_token1_account",
            "token0_mint",
            "token1_mint",
            "receiver_program",
            "user",
            "token_program",
            "token_2022_program",
            "event_authority",
            "program",
        ),
    ),
    InstructionSpec(
        "claimProtocolFees",
        EMPTY,
        (
            "caller",
            "pair",
            "rate_model",
            "futarchy_authority",
            "reserve0_vault",
            "reserve1_vault",
            "authority_token0_account",
            "authority_token1_account",
            "token0_mint",
            "token1_mint",
            "token_program",
            "token_2022_program",
            "associated_token_program",
            "system_program",
        ),
    ),
    InstructionSpec(
        "distributeTokens",
        EMPTY,
        (
            "caller",
            "futarchy_authority",
            "source_mint",
            "authority_token_account",
            "futarchy_treasury_token_account",
            "buybacks_vault_token_account",
            "team_treasury_token_account",
            "token_program",
            "token_2022_program",
        ),
    ),
    InstructionSpec(
        "initFutarchyAuthority",
        Struct((("authority", "pubkey"),)),
        ("deployer", "futarchy_authority", "system_program"),
    ),
    InstructionSpec(
        "updateFutarchyAuthority",
        Struct((("authority", "pubkey"),)),
        ("authority_signer", "futarchy_authority"),
    ),
    InstructionSpec(
        "updateProtocolRevenue",
        Struct(
            (
                ("swap_bps", "u16"),
                ("interest_bps", "u16"),
                ("futarchy_treasury_bps", "u16"),
                ("buybacks_vault_bps", "u16"),
                ("team_treasury_bps", "u16"),
            )
        ),
        ("authority_signer", "futarchy_authority"),
    ),
    InstructionSpec(
        "viewPairData",
        Struct((("getter", "u8"),)),
        ("pair", "rate_model", "futarchy_authority"),
        read_only=True,
    ),
    InstructionSpec(
        "viewUserPositionData",
        Struct((("getter", "u8"),)),
        ("user_position", "pair", "rate_model", "futarchy_authority"),
        read_only=True,
    ),
)

_EVENT_SPECS = (
    EventSpec(
        "pairCreatedEvent",
        Struct(
            (
                ("token0", "pubkey"),
                ("token1", "pubkey"),
                ("pair", "pubkey"),
                ("lp_mint", "pubkey"),
                ("rate_model", "pubkey"),
                ("swap_fee_bps", "u16"),
                ("half_life", "u64"),
                ("fixed_cf_bps", "u16"),
                ("params_hash", "bytes32"),
                ("version", "u8"),
                ("timestamp", "i64"),
            )
        ),
    ),
    EventSpec(
        "swapEvent",
        Struct(
            (
                ("is_token0_in", "bool"),
                ("amount_in", "u64"),
                ("amount_out", "u64"),
                ("fee_amount", "u64"),
                ("reserve0", "u64"),
                ("reserve1", "u64"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec("mintEvent", _LIQUIDITY_EVENT),
    EventSpec("burnEvent", _LIQUIDITY_EVENT),
    EventSpec("adjustLiquidityEvent", _LIQUIDITY_EVENT),
    EventSpec(
        "updatePairEvent",
        Struct(
            (
                ("price0_ema", "u64"),
                ("price1_ema", "u64"),
                ("rate0", "u64"),
                ("rate1", "u64"),
                ("reserve0", "u64"),
                ("reserve1", "u64"),
                ("cash_reserve0", "u64"),
                ("cash_reserve1", "u64"),
                ("total_debt0", "u64"),
                ("total_debt1", "u64"),
                ("total_debt0_shares", "u64"),
                ("total_debt1_shares", "u64"),
                ("total_collateral0", "u64"),
                ("total_collateral1", "u64"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec(
        "adjustCollateralEvent",
        Struct(
            (
                ("amount0", "i64"),
                ("amount1", "i64"),
                ("collateral0", "u64"),
                ("collateral1", "u64"),
                ("total_collateral0", "u64"),
                ("total_collateral1", "u64"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec(
        "adjustDebtEvent",
        Struct(
            (
                ("amount0", "i64"),
                ("amount1", "i64"),
                ("debt0_shares", "u64"),
                ("debt1_shares", "u64"),
                ("total_debt0", "u64"),
                ("total_debt1", "u64"),
                ("total_debt0_shares", "u64"),
                ("total_debt1_shares", "u64"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec(
        "userPositionCreatedEvent",
        Struct(
            (
                ("user", "pubkey"),
                ("pair", "pubkey"),
                ("position", "pubkey"),
                ("timestamp", "i64"),
            )
        ),
    ),
    EventSpec(
        "userPositionUpdatedEvent",
        Struct(
            (
                ("position", "pubkey"),
                ("collateral0", "u64"),
                ("collateral1", "u64"),
                ("debt0_shares", "u64"),
                ("debt1_shares", "u64"),
                ("collateral0_applied_min_cf_bps", "u16"),
                ("collateral1_applied_min_cf_bps", "u16"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec(
        "userPositionLiquidatedEvent",
        Struct(
            (
                ("user", "pubkey"),
                ("pair", "pubkey"),
                ("position", "pubkey"),
                ("liquidator", "pubkey"),
                ("collateral0_liquidated", "u64"),
                ("collateral1_liquidated", "u64"),
                ("debt0_liquidated", "u64"),
                ("debt1_liquidated", "u64"),
                ("collateral_price", "u64"),
                ("liquidation_bonus_applied", "u64"),
                ("k0", "u128"),
                ("k1", "u128"),
                ("timestamp", "i64"),
            )
        ),
    ),
    EventSpec(
        "userLiquidityPositionUpdatedEvent",
        Struct(
            (
                ("lp_amount", "u64"),
                ("token0_amount", "u64"),
                ("token1_amount", "u64"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
    EventSpec(
        "flashloanEvent",
        Struct(
            (
                ("amount0", "u64"),
                ("amount1", "u64"),
                ("fee0", "u64"),
                ("fee1", "u64"),
                ("receiver", "pubkey"),
                ("metadata", EVENT_METADATA),
            )
        ),
    ),
)

_ACCOUNT_SPECS = (
    AccountSpec(
        "pair",
        Struct(
            (
                ("token0", "pubkey"),
                ("token1", "pubkey"),
                ("lp_mint", "pubkey"),
                ("rate_model", "pubkey"),
                ("swap_fee_bps", "u16"),
                ("half_life", "u64"),
                ("fixed_cf_bps", "u16"),
                ("params_hash", "bytes32"),
                ("version", "u8"),
                ("reserve0", "u64"),
                ("reserve1", "u64"),
                ("cash_reserve0", "u64"),
                ("cash_reserve1", "u64"),
                ("last_price0_ema", "u64"),
                ("last_price1_ema", "u64"),
                ("last_update", "i64"),
                ("last_rate0", "u64"),
                ("last_rate1", "u64"),
                ("total_debt0", "u64"),
                ("total_debt1", "u64"),
                ("total_debt0_shares", "u64"),
                ("total_debt1_shares", "u64"),
                ("total_supply", "u64"),
                ("total_collateral0", "u64"),
                ("total_collateral1", "u64"),
                ("bump", "u8"),
            )
        ),
    ),
    AccountSpec(
        "userPosition",
        Struct(
            (
                ("owner", "pubkey"),
                ("pair", "pubkey"),
                ("collateral0_applied_min_cf_bps", "u16"),
                ("collateral1_applied_min_cf_bps", "u16"),
                ("collateral0", "u64"),
                ("collateral1", "u64"),
                ("debt0_shares", "u64"),
                ("debt1_shares", "u64"),
                ("bump", "u8"),
            )
        ),
    ),
    AccountSpec(
        "futarchyAuthority",
        Struct(
            (
                ("authority", "pubkey"),
                ("last_config_nonce", "u64"),
                ("revenue_share", Struct((("swap_bps", "u16"), ("interest_bps", "u16")))),
                (
                    "revenue_distribution",
                    Struct(
                        (
                            ("futarchy_treasury_bps", "u16"),
                            ("buybacks_vault_bps", "u16"),
                            ("team_treasury_bps", "u16"),
                        )
                    ),
                ),
                ("bump", "u8"),
            )
        ),
    ),
)

INSTRUCTIONS: dict[str, InstructionSpec] = {s.name: s for s in _INSTRUCTION_SPECS}
EVENTS: dict[str, EventSpec] = {s.name: s for s in _EVENT_SPECS}
ACCOUNTS: dict[str, AccountSpec] = {s.name: s for s in _ACCOUNT_SPECS}

INSTRUCTIONS_BY_DISCRIMINATOR: dict[bytes, InstructionSpec] = {
    s.discriminator: s for s in _INSTRUCTION_SPECS
}
EVENTS_BY_DISCRIMINATOR: dict[bytes, EventSpec] = {s.discriminator: s for s in _EVENT_SPECS}
ACCOUNTS_BY_DISCRIMINATOR: dict[bytes, AccountSpec] = {
    s.discriminator: s for s in _ACCOUNT_SPECS
}


# ──────────────────────────────────────────────
# Encode / decode helpers
# ──────────────────────────────────────────────


def encode_instruction(name: str, args: dict[str, Any] | None = None) -> bytes:
    spec = INSTRUCTIONS[name]
    return spec.discriminator + spec.args.encode(args or {})


def encode_event(name: str, fields: dict[str, Any]) -> bytes:
    """Encode an event as it appears in a "Program data:" log line."""
    spec = EVENTS[name]
    return spec.discriminator + spec.layout.encode(fields)


def encode_event_cpi(name: str, fields: dict[str, Any]) -> bytes:
    """Encode an event as the data of an emit_cpi self-invocation."""
    return EVENT_IX_TAG + encode_event(name, fields)


def encode_account(name: str, fields: dict[str, Any]) -> bytes:
    spec = ACCOUNTS[name]
    return spec.discriminator + spec.layout.encode(fields)


def decode_account(data: bytes) -> tuple[str, dict[str, Any]] | None:
    """Decode account data by discriminator.

    Returns None for accounts owned by the program but of unknown type.
    Raises DecodeError when the discriminator matches but the body is short.
    """
    spec = ACCOUNTS_BY_DISCRIMINATOR.get(bytes(data[:DISCRIMINATOR_SIZE]))
    if spec is None:
        return None
    return spec.name, spec.layout.decode(bytes(data[DISCRIMINATOR_SIZE:]))
