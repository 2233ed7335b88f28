from botcafe_retrieval.models.core import ActivationMethod, ExclusionReason, KnowledgeActivationLog
from botcafe_retrieval.services.activation_log import ActivationLogService


def _log(index, entry_id='k1', included=True, sticky=False, method=ActivationMethod.KEYWORD, score=2.0, conversation_id='conv-1'):
    return KnowledgeActivationLog(id=f'{entry_id}-{index}',
                                  tenant_id='tenant-1',
                                  conversation_id=conversation_id,
                                  message_index=index,
                                  knowledge_entry_id=entry_id,
                                  activation_method=method,
                                  activation_score=score,
                                  position_inserted='before_character:0',
                                  tokens_used=10,
                                  was_included=included,
                                  exclusion_reason=None if included else ExclusionReason.COOLDOWN_ACTIVE,
                                  sticky=sticky)


def test_entry_state_tracks_last_inclusion_and_trigger(store):
    for log in (_log(1, score=4.0), _log(2, sticky=True, score=4.0), _log(3, included=False), _log(4, entry_id='k2')):
        store.append_activation_log(log)

    states = ActivationLogService(store).entry_states('tenant-1', 'conv-1')

    assert states['k1'].last_included_index == 2
    assert states['k1'].last_triggered_index == 1
    assert states['k1'].last_score == 4.0
    assert states['k2'].last_triggered_index == 4


def test_entry_state_ignores_current_and_later_messages(store):
    store.append_activation_log(_log(1))
    store.append_activation_log(_log(5, method=ActivationMethod.VECTOR))

    states = ActivationLogService(store).entry_states('tenant-1', 'conv-1', before_index=5)

    assert states['k1'].last_included_index == 1
    assert states['k1'].last_method == ActivationMethod.KEYWORD


def test_delete_logs_by_conversation(store):
    store.append_activation_log(_log(1))
    store.append_activation_log(_log(1, conversation_id='conv-2'))
    service = ActivationLogService(store)

    assert service.delete_logs('tenant-1', 'conv-1') == 1
    assert [log.conversation_id for log in service.list_for_conversation('tenant-1', 'conv-2')] == ['conv-2']
    assert service.delete_logs('tenant-1') == 1
