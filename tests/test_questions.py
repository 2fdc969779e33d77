"""
Tests for question schema validation, rendering and caching.
"""
import copy
import json
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import SAMPLE_QUESTIONS
from registration.questions import (QuestionsConfigError, all_tags, branch_tags, get_question_branch,
                                    load_question_branches, max_file_uploads, read_branch_names,
                                    validate_question_branches)


def _write(tmp_path, branches, name='custom.json'):
    path = tmp_path / name
    path.write_text(json.dumps(branches))
    return str(path)


class TestValidation:

    def test_sample_is_valid(self):
        branches = validate_question_branches(copy.deepcopy(SAMPLE_QUESTIONS))
        assert [b.name for b in branches] == ['Participant', 'Mentor', 'Participant Confirmation', 'Waitlist']

    def test_duplicate_branch_names(self):
        raw = [{'name': 'A', 'questions': []}, {'name': 'A', 'questions': []}]
        with pytest.raises(QuestionsConfigError, match='not unique'):
            validate_question_branches(raw)

    def test_duplicate_question_names(self):
        raw = [{'name': 'A', 'questions': [
            {'name': 'q', 'label': 'Q', 'type': 'text'},
            {'name': 'q', 'label': 'Q again', 'type': 'text'},
        ]}]
        with pytest.raises(QuestionsConfigError):
            validate_question_branches(raw)

    def test_choice_question_needs_options(self):
        raw = [{'name': 'A', 'questions': [{'name': 'q', 'label': 'Q', 'type': 'radio'}]}]
        with pytest.raises(QuestionsConfigError):
            validate_question_branches(raw)

    def test_text_question_cannot_have_options(self):
        raw = [{'name': 'A', 'questions': [{'name': 'q', 'label': 'Q', 'type': 'text', 'options': ['x']}]}]
        with pytest.raises(QuestionsConfigError):
            validate_question_branches(raw)

    def test_unknown_type(self):
        raw = [{'name': 'A', 'questions': [{'name': 'q', 'label': 'Q', 'type': 'color'}]}]
        with pytest.raises(QuestionsConfigError):
            validate_question_branches(raw)

    def test_camel_case_keys(self):
        raw = [{'name': 'A', 'questions': [
            {'name': 'q', 'label': 'Q', 'type': 'textarea', 'minCharacterCount': 3, 'showInHelpScout': True},
        ]}]
        question = validate_question_branches(raw)[0].questions[0]
        assert question.min_character_count == 3
        assert question.show_in_helpscout is True


class TestLoading:

    def test_labels_rendered_as_single_line_markdown(self, tmp_path):
        location = _write(tmp_path, [{'name': 'A', 'questions': [
            {'name': 'q', 'label': 'Read [the rules](https://example.com) **now**', 'type': 'text'},
        ]}])
        label = load_question_branches(location)[0].questions[0].label
        assert label == ('Read <a href="https://example.com" target="_blank">the rules</a> '
                         '<strong>now</strong>')

    def test_other_option_appended(self, questions_file):
        interests = get_question_branch(questions_file, 'Participant').questions[2]
        assert interests.options == ['Web', 'Hardware', 'Other']

    def test_text_blocks_rendered(self, questions_file):
        block = get_question_branch(questions_file, 'Participant').text[0]
        assert block.placement == 'start'
        assert '<strong>yourself</strong>' in block.content

    def test_results_are_copies(self, questions_file):
        first = load_question_branches(questions_file)
        first[0].questions[0].label = 'Mutated'
        assert load_question_branches(questions_file)[0].questions[0].label == 'School'

    def test_cached_per_location(self, questions_file, tmp_path):
        load_question_branches(questions_file)
        # Changing the file does not affect the cached schema
        (tmp_path / 'questions.json').write_text('[]')
        assert len(load_question_branches(questions_file)) == 4

    def test_unknown_branch(self, questions_file):
        with pytest.raises(QuestionsConfigError, match='not found'):
            get_question_branch(questions_file, 'Judge')

    def test_missing_file(self, tmp_path):
        with pytest.raises(QuestionsConfigError):
            load_question_branches(str(tmp_path / 'missing.json'))


class TestTags:

    def test_read_branch_names_in_order(self, questions_file):
        assert read_branch_names(questions_file) == ['Participant', 'Mentor', 'Participant Confirmation', 'Waitlist']

    def test_branch_tags(self, questions_file):
        tags = branch_tags(questions_file)
        assert tags['Mentor'] == ['company']
        assert tags['Participant'][0] == 'school'

    def test_all_tags_unique(self, questions_file):
        tags = all_tags(questions_file)
        assert len(tags) == len(set(tags))
        assert 'attending' in tags and 'company' in tags

    def test_max_file_uploads(self, questions_file):
        assert max_file_uploads(questions_file) == 1
