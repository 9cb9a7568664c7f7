'''
Pure navigation rules for paid question sets. Evaluated on every question navigation so nothing in
here touches the store, the cache or the clock.
'''
import backend
import reconciler

def is_question_reachable(question_index: int, question_set: backend.QuestionSet, decision: reconciler.GrantDecision) -> bool:
    if decision.has_access:
        return True
    if not question_set.is_paid:
        return True
    result = 0 <= question_index < question_set.trial_question_count
    return result

def first_gated_question_index(question_set: backend.QuestionSet, decision: reconciler.GrantDecision) -> int | None:
    '''Index of the first question the user is stopped at, None if they are never stopped.'''
    if decision.has_access or not question_set.is_paid:
        return None
    if question_set.trial_question_count >= question_set.total_question_count:
        return None
    result = max(question_set.trial_question_count, 0)
    return result

def clamp_question_navigation(target_index: int, question_set: backend.QuestionSet, decision: reconciler.GrantDecision) -> int:
    '''Resolve a jump to `target_index` to the closest question the user may actually see.'''
    target_index = max(target_index, 0)
    if question_set.total_question_count > 0:
        target_index = min(target_index, question_set.total_question_count - 1)

    if is_question_reachable(target_index, question_set, decision):
        return target_index

    gated  = first_gated_question_index(question_set, decision) or 0
    result = max(gated - 1, 0)
    return result
