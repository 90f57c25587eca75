import pytest

from conftest import SEL, FakeSelect
from igr_config import Config
from igr_errors import CascadeOrderError
from selection_resolver import SelectionResolver, match_option
from session_models import OptionSet, SelectionMethod


def raw(*pairs):
    return [{'value': v, 'text': t, 'index': i} for i, (v, t) in enumerate(pairs)]


PLACEHOLDER = ('---Select Tahsil----', '---Select Tahsil----')


class TestMatchOption:

    def test_verbatim_value_is_exact(self):
        option, method = match_option(raw(PLACEHOLDER, ('Pune ', 'Pune'), ('Pune', 'Pune')), 'Pune')
        assert method == SelectionMethod.EXACT
        assert option['index'] == 2

    def test_trailing_space_value_is_padded(self):
        option, method = match_option(raw(PLACEHOLDER, ('Haveli ', 'Haveli')), 'Haveli')
        assert method == SelectionMethod.PADDED
        assert option['value'] == 'Haveli '

    def test_surrounding_whitespace_is_trimmed(self):
        option, method = match_option(raw(PLACEHOLDER, ('Haveli', 'Haveli')), ' Haveli  ')
        assert method == SelectionMethod.TRIMMED
        assert option['value'] == 'Haveli'

    def test_label_match_ignores_case(self):
        option, method = match_option(raw(PLACEHOLDER, ('27', 'Haveli')), 'HAVELI')
        assert method == SelectionMethod.LABEL
        assert option['value'] == '27'

    def test_substring_of_label(self):
        _, method = match_option(raw(PLACEHOLDER, ('27', 'Haveli Taluka')), 'haveli')
        assert method == SelectionMethod.SUBSTRING

    def test_label_inside_candidate(self):
        option, method = match_option(raw(PLACEHOLDER, ('5', 'Pune')), 'Pune City')
        assert method == SelectionMethod.SUBSTRING
        assert option['value'] == '5'

    def test_unknown_value_falls_back_to_first_real_option(self):
        option, method = match_option(raw(PLACEHOLDER, ('1', 'Alpha'), ('2', 'Beta')), 'zzz')
        assert method == SelectionMethod.FALLBACK_FIRST
        assert option['value'] == '1'

    def test_only_placeholders_is_not_found(self):
        option, method = match_option(raw(PLACEHOLDER, ('', '')), 'Haveli')
        assert option is None
        assert method == SelectionMethod.NOT_FOUND


def test_option_set_is_trimmed_unique():
    options = OptionSet.from_raw('village', raw(
        ('---Select Village----', '---Select Village----'),
        ('Ambegaon', 'Ambegaon'),
        ('Ambegaon ', 'Ambegaon'),
        (' Wagholi', 'Wagholi'),
    ))
    assert options.values() == ['Ambegaon', 'Wagholi']
    assert options.items[1].raw_value == ' Wagholi'
    assert options.to_list()[0] == {'value': 'Ambegaon', 'text': 'Ambegaon'}


class TestResolver:

    @pytest.fixture
    def resolver(self, browser, clock):
        return SelectionResolver(browser, clock)

    def test_walks_the_cascade(self, resolver, browser):
        years, year = resolver.resolve('year', '2025')
        assert year.method == SelectionMethod.EXACT and year.verified
        assert years.values() == ['2024', '2025']

        districts, district = resolver.resolve('district', 'Pune')
        assert district.method == SelectionMethod.EXACT
        assert 'Satara' in districts.values()

        talukas, selected = resolver.resolve('taluka', '')
        assert selected.method == SelectionMethod.NONE
        assert talukas.values() == ['Haveli', 'Mulshi']

    def test_padded_remote_value_is_submitted_raw(self, resolver, browser):
        resolver.resolve('year', '2025')
        _, district = resolver.resolve('district', 'Satara')
        assert district.method == SelectionMethod.PADDED
        assert browser.selects[SEL['district']].selected_option()['value'] == 'Satara '

    def test_empty_dependent_level_is_not_an_error(self, resolver, clock):
        resolver.resolve('year', '2025')
        resolver.resolve('district', 'Satara')
        talukas, selected = resolver.resolve('taluka', '')
        assert talukas.is_empty()
        assert clock.now() >= Config.DROPDOWN_TIMEOUT

    def test_missing_value_with_no_options_is_not_found(self, resolver):
        resolver.resolve('year', '2025')
        resolver.resolve('district', 'Satara')
        _, selected = resolver.resolve('taluka', 'Wai')
        assert selected.method == SelectionMethod.NOT_FOUND
        assert not selected.found

    def test_waits_for_slow_population(self, resolver, browser, clock):
        resolver.resolve('year', '2025')
        browser.selects[SEL['district']].slow_reads = 4
        districts, district = resolver.resolve('district', 'Thane')
        assert district.method == SelectionMethod.EXACT
        assert len(districts) == 3
        assert Config.DROPDOWN_POLL_INTERVAL in clock.sleeps

    def test_settle_is_longer_for_village(self, resolver, clock):
        resolver.resolve('year', '2025')
        resolver.resolve('district', 'Pune')
        resolver.resolve('taluka', 'Haveli')
        clock.sleeps.clear()
        resolver.resolve('village', 'Wagholi')
        assert Config.VILLAGE_SETTLE in clock.sleeps

    def test_selection_that_does_not_stick_is_forced_by_index(self, resolver, browser):
        resolver.resolve('year', '2025')
        browser.selects[SEL['district']].sticky = False
        _, district = resolver.resolve('district', 'Thane')
        assert district.forced
        assert district.verified
        assert browser.selects[SEL['district']].selected_option()['value'] == 'Thane'

    def test_unverifiable_selection_is_reported(self, resolver, browser):
        resolver.resolve('year', '2025')
        browser.selects[SEL['district']] = FakeSelect(
            [('---Select District---', '---Select District---'), ('Pune', 'Pune')],
            sticky=False,
            force_sticks=False,
        )
        _, district = resolver.resolve('district', 'Pune')
        assert district.forced
        assert not district.verified

    def test_child_before_parent_is_rejected(self, resolver):
        with pytest.raises(CascadeOrderError):
            resolver.resolve('taluka', 'Haveli')
