from solders.pubkey import Pubkey

from modules.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    ProgramAddresses,
    associated_token_account,
    find_program_address,
)

PROGRAM = Pubkey.new_unique()
OWNER = Pubkey.new_unique()

# ------------------------- Tests ------------------------- #

def test_singletons_use_fixed_seeds():
    addrs = ProgramAddresses.derive(str(PROGRAM))
    for seed, derived in [
        (b"market", addrs.market),
        (b"usdc_vault", addrs.usdc_vault),
        (b"mint", addrs.cfd_mint),
        (b"oracle", addrs.oracle),
        (b"multi_oracle", addrs.multi_oracle),
    ]:
        expected, _bump = Pubkey.find_program_address([seed], PROGRAM)
        assert derived == str(expected)


def test_configured_addresses_win():
    market = str(Pubkey.new_unique())
    addrs = ProgramAddresses.derive(str(PROGRAM), market=market)
    assert addrs.market == market
    assert addrs.usdc_mint is None


def test_position_is_derived_from_owner():
    addrs = ProgramAddresses.derive(str(PROGRAM))
    expected, _bump = Pubkey.find_program_address([b"position", bytes(OWNER)], PROGRAM)
    assert addrs.position_for(str(OWNER)) == str(expected)
    assert addrs.position_for(OWNER) == str(expected)


def test_associated_token_account():
    mint = Pubkey.new_unique()
    expected, _bump = Pubkey.find_program_address(
        [bytes(OWNER), bytes(Pubkey.from_string(TOKEN_PROGRAM_ID)), bytes(mint)],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    assert associated_token_account(str(OWNER), str(mint)) == str(expected)


def test_derivation_is_deterministic():
    assert find_program_address(str(PROGRAM), b"market") == find_program_address(PROGRAM, b"market")
