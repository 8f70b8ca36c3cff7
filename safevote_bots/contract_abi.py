"""SafeVote V2 contract ABI: the calls and events the harness uses."""

_POSITION_TUPLE = {
    'components': [
        {'internalType': 'string', 'name': 'title', 'type': 'string'},
        {'internalType': 'string[]', 'name': 'candidates', 'type': 'string[]'},
        {'internalType': 'uint256', 'name': 'maxSelections', 'type': 'uint256'},
    ],
    'internalType': 'struct SafeVote.Position[]',
    'name': 'positions',
    'type': 'tuple[]',
}


def _arg(name, type_, indexed=None):
    arg = {'internalType': type_, 'name': name, 'type': type_}
    if indexed is not None:
        arg['indexed'] = indexed
    return arg


SAFE_VOTE_V2_ABI = [
    {
        'inputs': [
            _arg('title', 'string'),
            _arg('description', 'string'),
            _arg('location', 'string'),
            _arg('startTime', 'uint256'),
            _arg('endTime', 'uint256'),
            _arg('totalVoters', 'uint256'),
            _arg('voterMerkleRoot', 'bytes32'),
            _arg('isPublic', 'bool'),
            _arg('allowAnonymous', 'bool'),
            _arg('allowDelegation', 'bool'),
            _POSITION_TUPLE,
        ],
        'name': 'createElection',
        'outputs': [_arg('', 'uint256')],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [
            _arg('electionId', 'uint256'),
            _arg('voterKey', 'bytes32'),
            _arg('merkleProof', 'bytes32[]'),
            _arg('votes', 'uint256[][]'),
            _arg('delegateTo', 'address'),
        ],
        'name': 'vote',
        'outputs': [],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [_arg('electionId', 'uint256')],
        'name': 'getElection',
        'outputs': [
            _arg('electionId_', 'uint256'),
            _arg('creator', 'address'),
            _arg('title', 'string'),
            _arg('description', 'string'),
            _arg('location', 'string'),
            _arg('createdAt', 'uint256'),
            _arg('startTime', 'uint256'),
            _arg('endTime', 'uint256'),
            _arg('totalRegisteredVoters', 'uint256'),
            _arg('totalVotesCast', 'uint256'),
            _arg('voterMerkleRoot', 'bytes32'),
            _arg('isPublic', 'bool'),
            _arg('allowAnonymous', 'bool'),
            _arg('allowDelegation', 'bool'),
            _arg('status', 'uint8'),
            _POSITION_TUPLE,
        ],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [_arg('electionId', 'uint256'), _arg('positionIndex', 'uint256')],
        'name': 'getElectionResults',
        'outputs': [_arg('candidates', 'string[]'), _arg('votesCast', 'uint256[]')],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [],
        'name': 'getTotalElections',
        'outputs': [_arg('', 'uint256')],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [_arg('', 'uint256'), _arg('', 'bytes32')],
        'name': 'usedVoterKeys',
        'outputs': [_arg('', 'bool')],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'anonymous': False,
        'inputs': [
            _arg('electionId', 'uint256', indexed=True),
            _arg('creator', 'address', indexed=True),
            _arg('title', 'string', indexed=False),
            _arg('startTime', 'uint256', indexed=False),
            _arg('endTime', 'uint256', indexed=False),
            _arg('timestamp', 'uint256', indexed=False),
        ],
        'name': 'ElectionCreatedV2',
        'type': 'event',
    },
    {
        'anonymous': False,
        'inputs': [
            _arg('electionId', 'uint256', indexed=True),
            _arg('voterKeyHash', 'bytes32', indexed=True),
            _arg('voter', 'address', indexed=True),
            _arg('isAnonymous', 'bool', indexed=False),
            _arg('chainId', 'uint256', indexed=False),
            _arg('timestamp', 'uint256', indexed=False),
        ],
        'name': 'VoteCastV2',
        'type': 'event',
    },
]

# Outputs of getElection, in ABI order
ELECTION_FIELDS = [
    'election_id', 'creator', 'title', 'description', 'location', 'created_at',
    'start_time', 'end_time', 'total_registered_voters', 'total_votes_cast',
    'voter_merkle_root', 'is_public', 'allow_anonymous', 'allow_delegation',
    'status', 'positions',
]
