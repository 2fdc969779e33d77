"""
Tests for admin statistics.
"""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from registration.models import new_user
from registration.stats import compute_statistics, question_statistics


def _applicant(email, year, interests, **fields):
    return new_user(email, applied=True, application_branch='Participant', application_data=[
        {'name': 'year', 'type': 'radio', 'value': year},
        {'name': 'interests', 'type': 'checkbox', 'value': interests},
    ], **fields)


class TestQuestionStatistics:

    def test_counts_and_other_answers(self, branch_config):
        users = [
            _applicant('a@example.com', 'First', ['Web', 'Robotics']),
            _applicant('b@example.com', 'First', ['Web']),
            _applicant('c@example.com', 'Second', None),
            new_user('d@example.com', application_branch='Mentor'),
        ]
        stats = question_statistics(branch_config.load_branch('Participant'), users)
        assert [s['name'] for s in stats] == ['year', 'interests']
        assert stats[0]['responses'] == [{'response': 'First', 'count': 2}, {'response': 'Second', 'count': 1}]
        assert stats[1]['responses'] == [
            {'response': 'Web', 'count': 2},
            {'response': 'Hardware', 'count': 0},
            {'response': 'Robotics', 'count': 1},
        ]


class TestComputeStatistics:

    def test_totals(self, branch_config, configure_branch):
        configure_branch('Participant', 'Application')
        configure_branch('Mentor', 'Application')
        configure_branch('Participant Confirmation', 'Confirmation')
        users = [
            _applicant('a@example.com', 'First', ['Web'], accepted=True, confirmed=True,
                       confirmation_branch='Participant Confirmation'),
            _applicant('b@example.com', 'Second', ['Web']),
            new_user('c@example.com'),
        ]
        stats = compute_statistics(users, branch_config.load_all_branches('Application'),
                                   branch_config.load_all_branches('Confirmation'))
        assert stats['total_users'] == 3
        assert stats['applied'] == 2
        assert stats['accepted'] == 1
        assert stats['confirmed'] == 1
        assert stats['no_decision'] == 1
        assert stats['application_branches'] == [{'name': 'Participant', 'count': 2}, {'name': 'Mentor', 'count': 0}]
        assert stats['confirmation_branches'] == [{'name': 'Participant Confirmation', 'count': 1}]
        assert {s['branch'] for s in stats['questions']} == {'Participant'}
