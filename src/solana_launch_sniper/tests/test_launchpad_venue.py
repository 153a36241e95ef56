from solders.keypair import Keypair
from solders.pubkey import Pubkey

from solana_launch_sniper.config.settings import ExecutionConfig, LaunchpadConfig
from solana_launch_sniper.datalake.schemas import ExecutionMethod, Side, SwapRequest
from solana_launch_sniper.execution.venues.base import VenueQuote
from solana_launch_sniper.execution.venues.launchpad import LaunchpadVenue

SYNC_NATIVE = bytes([17])
CLOSE_ACCOUNT = bytes([9])


def _venue():
    return LaunchpadVenue(rpc=None, config=LaunchpadConfig(), execution=ExecutionConfig())


def _quote(request):
    return VenueQuote(
        method=ExecutionMethod.CONSTANT_PRODUCT,
        venue="launchpad",
        amount_in=request.amount,
        expected_amount_out=1_000,
        minimum_amount_out=950,
    )


def test_buy_wraps_sol_swaps_and_closes_the_wsol_account():
    venue = _venue()
    owner = Keypair().pubkey()
    token_program = Pubkey.from_string(venue.config.token_program)
    request = SwapRequest(side=Side.BUY, mint=str(Pubkey.new_unique()), amount=10_000_000, slippage=0.05, platform="letsbonk")

    instructions = venue.build_instructions(request, _quote(request), owner)

    assert len(instructions) == 8
    assert instructions[5].program_id == token_program
    assert bytes(instructions[5].data) == SYNC_NATIVE
    assert instructions[6].program_id == venue.program_id
    assert instructions[-1].program_id == token_program
    assert bytes(instructions[-1].data) == CLOSE_ACCOUNT


def test_sell_skips_the_wrap():
    venue = _venue()
    owner = Keypair().pubkey()
    request = SwapRequest(side=Side.SELL, mint=str(Pubkey.new_unique()), amount=5_000, slippage=0.05, platform="letsbonk")

    instructions = venue.build_instructions(request, _quote(request), owner)

    assert len(instructions) == 6
    assert instructions[4].program_id == venue.program_id
    assert bytes(instructions[-1].data) == CLOSE_ACCOUNT
