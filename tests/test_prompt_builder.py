from botcafe_retrieval.models.activation import ActivatedEntry, ChatMessage
from botcafe_retrieval.models.core import ActivationMethod, KnowledgeEntry, MessageRole, Position, Positioning
from botcafe_retrieval.services.prompt_builder import PromptBuilder, format_entry

BUILDER = PromptBuilder()

CARD = ('You are roleplaying.\n'
        'Character: Mira\n'
        'Mira is a harbour pilot.\n\n'
        '### Personality\n'
        'Calm and dry-witted.\n\n'
        'Example: "Tide turns at dusk."')


def _candidate(entry_id, position, order=100, depth=0, tags=None, role=MessageRole.SYSTEM) -> ActivatedEntry:
    entry = KnowledgeEntry(id=entry_id,
                           tenant_id='tenant-1',
                           text=f'<{entry_id}>',
                           tags=list(tags or []),
                           positioning=Positioning(position=position, order=order, depth=depth, role=role))
    return ActivatedEntry(entry=entry, method=ActivationMethod.CONSTANT, score=100.0)


def test_format_entry_labels_with_first_tag():
    assert format_entry(_candidate('a', Position.SYSTEM_TOP, tags=['Harbour', 'Places'])) == '[Harbour]\n<a>'
    assert format_entry(_candidate('b', Position.SYSTEM_TOP)) == '<b>'


def test_system_edges():
    prompt = BUILDER.build_prompt('BASE', [_candidate('top', Position.SYSTEM_TOP), _candidate('bottom', Position.SYSTEM_BOTTOM)])

    assert prompt == '<top>\n\nBASE\n\n<bottom>'


def test_before_character_uses_bot_name():
    prompt = BUILDER.build_prompt(CARD, [_candidate('lore', Position.BEFORE_CHARACTER)], bot_name='Mira')

    assert prompt.index('<lore>') < prompt.index('Character: Mira')
    assert prompt.index('You are roleplaying.') < prompt.index('<lore>')


def test_bot_name_is_matched_literally():
    prompt = BUILDER.build_prompt('Intro line\nName: C++ Bot\nrest', [_candidate('lore', Position.BEFORE_CHARACTER)],
                                  bot_name='C++ Bot')

    assert prompt.index('<lore>') < prompt.index('Name: C++ Bot')


def test_after_character_and_examples():
    prompt = BUILDER.build_prompt(CARD, [
        _candidate('after-char', Position.AFTER_CHARACTER),
        _candidate('before-ex', Position.BEFORE_EXAMPLES),
    ])

    assert prompt.index('Mira is a harbour pilot.') < prompt.index('<after-char>') < prompt.index('### Personality')
    assert prompt.index('<before-ex>') < prompt.index('Example:')


def test_entries_in_same_position_follow_order():
    prompt = BUILDER.build_prompt('BASE', [
        _candidate('second', Position.SYSTEM_BOTTOM, order=2),
        _candidate('first', Position.SYSTEM_BOTTOM, order=1),
    ])

    assert prompt == 'BASE\n\n<first>\n\n<second>'


def test_at_depth_entries_are_left_out_of_prompt():
    prompt = BUILDER.build_prompt('BASE', [_candidate('deep', Position.AT_DEPTH, depth=1)])

    assert prompt == 'BASE'


def test_depth_entries_are_spliced_into_messages():
    messages = [
        ChatMessage(role=MessageRole.USER, content='one'),
        ChatMessage(role=MessageRole.ASSISTANT, content='two'),
        ChatMessage(role=MessageRole.USER, content='three'),
    ]

    result = BUILDER.build_messages_with_depth_entries(messages, [
        _candidate('deep', Position.AT_DEPTH, depth=1, role=MessageRole.USER),
        _candidate('top-level', Position.SYSTEM_TOP),
    ])

    assert [m.content for m in result] == ['one', 'two', '<deep>', 'three']
    assert result[2].role == MessageRole.USER
    assert len(messages) == 3


def test_depth_larger_than_history_goes_first():
    messages = [ChatMessage(role=MessageRole.USER, content='only')]

    result = BUILDER.build_messages_with_depth_entries(messages, [_candidate('deep', Position.AT_DEPTH, depth=9)])

    assert [m.content for m in result] == ['<deep>', 'only']


def test_debug_info_lists_entries():
    info = BUILDER.get_activation_debug_info([_candidate('a', Position.SYSTEM_TOP)])

    assert 'Total Entries: 1' in info
    assert 'SYSTEM_TOP (1):' in info
    assert '[constant] Score: 100.00' in info
