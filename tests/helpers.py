from exporter import ValidatorVoteState


def make_account(pubkey: str, root_slot: int, last_vote: int, *credits: int) -> ValidatorVoteState:
    """Build a vote account whose epoch credits end with the given values"""
    history = []
    prev = 0
    for epoch, value in enumerate(credits, start=600):
        history.append((epoch, value, prev))
        prev = value
    return ValidatorVoteState(vote_pubkey=pubkey, root_slot=root_slot, last_vote=last_vote,
                              epoch_credits=tuple(history))
