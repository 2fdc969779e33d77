"""
Admin dashboard statistics.
"""
from collections import Counter

from registration.models import find_item
from registration.questions import OTHER_OPTION


def _branch_counts(users: list, field: str, names: list) -> list:
    counts = Counter(u[field] for u in users if u.get(field))
    ordered = list(names) + sorted(n for n in counts if n not in names)
    return [{'name': name, 'count': counts.get(name, 0)} for name in ordered]


def question_statistics(branch, users: list) -> list:
    """Response counts for each choice question of an application branch.

    Free text "Other" answers are counted under their own text.
    """
    applicants = [u for u in users if u.get('application_branch') == branch.name]
    statistics = []
    for question in branch.questions:
        if not question.is_choice:
            continue
        counts = Counter()
        for user in applicants:
            item = find_item(user.get('application_data'), question.name)
            value = item.get('value') if item else None
            if value is None:
                continue
            for response in (value if isinstance(value, list) else [value]):
                counts[response] += 1
        responses = [{'response': option, 'count': counts.pop(option, 0)}
                     for option in question.options if option != OTHER_OPTION or counts.get(option)]
        responses += [{'response': text, 'count': count}
                      for text, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]
        statistics.append({
            'branch': branch.name,
            'name': question.name,
            'label': question.label,
            'responses': responses,
        })
    return statistics


def compute_statistics(users: list, application_branches: list, confirmation_branches: list) -> dict:
    applied = [u for u in users if u.get('applied')]
    stats = {
        'total_users': len(users),
        'applied': len(applied),
        'accepted': sum(1 for u in users if u.get('accepted')),
        'confirmed': sum(1 for u in users if u.get('confirmed')),
        'no_decision': sum(1 for u in applied if not u.get('confirmation_branch')),
        'application_branches': _branch_counts(
            applied, 'application_branch', [b.name for b in application_branches]),
        'confirmation_branches': _branch_counts(
            users, 'confirmation_branch', [b.name for b in confirmation_branches]),
        'questions': [],
    }
    for branch in application_branches:
        stats['questions'].extend(question_statistics(branch, users))
    return stats
