"""Tests for prescreen.pipeline.fill — missing-bureau scan and backfill."""
import pytest

from prescreen.pipeline.base import Actor, ValidationError
from prescreen.pipeline.fill import BureauFillOrchestrator, parse_selections


@pytest.fixture
def fill(repos, matching_client, cipher):
    return BureauFillOrchestrator(repos, matching_client, cipher)


def respond_per_bureau(matching_client, scores=None, failed=(), errors=()):
    """
    Fill handler keyed by the fill program's bureau.

    scores: {bureau: credit_score} → every record qualifies with that score
    failed: bureaus where every record comes back as failed
    errors: bureaus where the whole submission fails
    """
    scores = scores or {}

    def handler(program, records):
        bureau = matching_client.fill_bureau_of(program)
        if bureau in errors:
            return {'success': False, 'qualified': [], 'failed': [], 'error': f'{bureau} down'}
        if bureau in failed:
            return {'success': True, 'qualified': [],
                    'failed': [{'input_id': r['input_id'], 'match': False} for r in records]}
        return {
            'success': True,
            'qualified': [{'input_id': r['input_id'], 'outputs': {bureau: {'credit_score': scores[bureau]}}}
                          for r in records],
            'failed': [],
        }
    return handler


class TestScan:

    def test_reports_missing_bureaus(self, fill, make_lead):
        lead = make_lead(scores={'eq': 640})
        scan = fill.scan()

        assert scan.summary() == {'totalLeadsWithMissing': 1, 'missingEq': 0, 'missingTu': 1, 'missingEx': 1}
        preview = scan.leads[0]
        assert preview['id'] == lead.id
        assert preview['missingBureaus'] == ['tu', 'ex']
        assert preview['existingScores'] == {'eq': 640}

    def test_complete_leads_excluded(self, fill, make_lead):
        make_lead(scores={'eq': 700, 'tu': 710, 'ex': 720})
        assert fill.scan().leads == []

    def test_queried_without_hit_counts_as_present(self, fill, make_lead):
        make_lead(scores={'eq': 700, 'tu': None, 'ex': 690})
        assert fill.scan().leads == []

    def test_requires_matched_with_pii(self, fill, make_lead):
        make_lead(first='No', last='Match', match_status='no_match', scores={'eq': 600})
        make_lead(first='No', last='Pii', ssn_encrypted=None, scores={'eq': 600})
        assert fill.scan().leads == []

    def test_to_dict(self, fill, make_lead):
        make_lead(scores={'tu': 610})
        data = fill.scan().to_dict()
        assert set(data) == {'summary', 'leads'}
        assert data['summary']['missingEq'] == 1


class TestExecute:

    def test_merges_new_bureau_and_rescores(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600}, tier='tier_2')
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 680}, failed=('ex',))

        result = fill.execute()

        assert result.results['tu'].qualified == 1
        assert result.results['ex'].failed == 1
        assert result.total_updated == 1

        refreshed = repos.leads.get(lead.id)
        assert refreshed.middle_score is None
        assert refreshed.tier == 'tier_1'    # max(600, 680)
        assert refreshed.is_qualified is True

        by_bureau = {r.bureau: r for r in repos.results.list_for_lead(lead.id)}
        assert by_bureau['tu'].credit_score == 680 and by_bureau['tu'].is_hit is True
        assert by_bureau['ex'].credit_score is None and by_bureau['ex'].is_hit is False

        assert fill.scan().leads == []

    def test_third_bureau_gives_middle_score(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600, 'tu': 640})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'ex': 700})

        fill.execute()

        refreshed = repos.leads.get(lead.id)
        assert refreshed.middle_score == 640
        assert refreshed.tier == 'tier_1'

    def test_one_bureau_failing_does_not_block_others(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={})
        matching_client.submit_handler = respond_per_bureau(
            matching_client, scores={'eq': 610, 'ex': 650}, errors=('tu',))

        result = fill.execute()

        assert result.results['tu'].error == 'tu down'
        assert result.results['tu'].failed == 1
        assert repos.batches.get(result.results['tu'].batch_id).status == 'failed'
        assert {r.bureau for r in repos.results.list_for_lead(lead.id)} == {'eq', 'ex'}
        assert result.total_updated == 2

    def test_exception_scoped_to_bureau(self, repos, fill, matching_client, make_lead):
        make_lead(scores={'eq': 600})
        good = respond_per_bureau(matching_client, scores={'ex': 650})

        def handler(program, records):
            if matching_client.fill_bureau_of(program) == 'tu':
                raise RuntimeError('socket closed')
            return good(program, records)
        matching_client.submit_handler = handler

        result = fill.execute()
        assert result.results['tu'].error == 'socket closed'
        assert result.results['ex'].qualified == 1

    def test_fill_batch_bookkeeping(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600, 'tu': 610})
        matching_client.submit_handler = respond_per_bureau(matching_client, failed=('ex',))

        result = fill.execute(actor=Actor(user_id='admin', role='admin'))

        ex = result.results['ex']
        batch = repos.batches.get(ex.batch_id)
        assert batch.name.startswith('Fill EX - ')
        assert batch.lead_ids == [lead.id]
        assert batch.status == 'completed'    # no match is not a failed submission
        assert (batch.qualified_count, batch.failed_count) == (0, 1)
        assert result.results['eq'].to_dict() == {'submitted': 0, 'qualified': 0, 'failed': 0}

    def test_idempotent_result_upsert(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 680})

        fill._fill_bureau('tu', [lead], None)
        fill._fill_bureau('tu', [lead], None)

        tu_rows = [r for r in repos.results.list_for_lead(lead.id) if r.bureau == 'tu']
        assert len(tu_rows) == 1
        assert tu_rows[0].credit_score == 680

    def test_fill_program_created_once_per_run(self, fill, matching_client, make_lead):
        make_lead(first='A', last='One', scores={'eq': 600})
        make_lead(first='B', last='Two', scores={'eq': 610})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 650, 'ex': 660})

        fill.execute()
        assert sorted(p['name'] for p in matching_client.created) == ['Fill - EX Only', 'Fill - TU Only']

    def test_input_ids_contiguous(self, fill, matching_client, make_lead):
        make_lead(first='A', last='One', scores={'eq': 600, 'tu': 600})
        make_lead(first='B', last='Two', scores={'eq': 600, 'tu': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'ex': 650})

        fill.execute()
        _, records = matching_client.submissions[-1]
        assert [r['input_id'] for r in records] == [1, 2]
        assert records[0]['ssn'] == '123456789'
        assert records[0]['date_of_birth'] == '1980-01-31'

    def test_no_fill_program_available(self, repos, fill, matching_client, make_lead):
        make_lead(scores={'eq': 600})
        matching_client.create_error = 'Failed to create program: 500'

        result = fill.execute()
        assert result.results['tu'].error == 'Failed to create single-bureau program on Altair'
        assert matching_client.submissions == []

    def test_decrypt_failure_drops_lead(self, repos, fill, matching_client, make_lead):
        make_lead(first='Bad', last='Cipher', ssn_encrypted='not-a-token', scores={'eq': 600, 'tu': 600})
        ok = make_lead(first='Good', last='Cipher', scores={'eq': 600, 'tu': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'ex': 650})

        result = fill.execute()
        assert result.results['ex'].submitted == 1
        assert {r.bureau for r in repos.results.list_for_lead(ok.id)} == {'eq', 'tu', 'ex'}

    def test_nothing_prepared(self, fill, matching_client, make_lead, main_program):
        make_lead(ssn_encrypted='garbage', scores={'eq': 600, 'tu': 600})
        result = fill.execute()
        assert result.results['ex'].error == 'No records could be prepared'
        assert matching_client.submissions == []

    def test_selections_restrict_leads_and_bureaus(self, repos, fill, matching_client, make_lead):
        a = make_lead(first='A', last='One', scores={'eq': 600})
        b = make_lead(first='B', last='Two', scores={'eq': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 650, 'ex': 660})

        result = fill.execute(selections={str(a.id): ['tu']})

        assert result.results['tu'].submitted == 1
        assert result.results['ex'].submitted == 0
        assert {r.bureau for r in repos.results.list_for_lead(a.id)} == {'eq', 'tu'}
        assert {r.bureau for r in repos.results.list_for_lead(b.id)} == {'eq'}

    def test_lead_ids_restrict_leads(self, repos, fill, matching_client, make_lead):
        a = make_lead(first='A', last='One', scores={'eq': 600})
        make_lead(first='B', last='Two', scores={'eq': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 650, 'ex': 660})

        result = fill.execute(lead_ids=[a.id])
        assert result.results['tu'].submitted == 1
        assert result.results['ex'].submitted == 1

    def test_audit_entry(self, repos, fill, matching_client, make_lead):
        make_lead(scores={'eq': 600})
        matching_client.submit_handler = respond_per_bureau(matching_client, scores={'tu': 650, 'ex': 660})

        result = fill.execute(actor=Actor(user_id='admin', role='admin'))

        entries, total = repos.audit.list(action='fill_missing_bureaus')
        assert total == 1
        assert entries[0].details == result.to_dict()
        assert entries[0].performed_by == 'admin'

    def test_unreported_leads_counted_failed(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600, 'tu': 610})
        matching_client.submit_handler = lambda program, records: {
            'success': True, 'qualified': [], 'failed': []}

        result = fill.execute()

        ex = result.results['ex']
        assert (ex.submitted, ex.qualified, ex.failed) == (1, 0, 1)
        assert repos.batches.get(ex.batch_id).failed_count == 1
        assert {r.bureau for r in repos.results.list_for_lead(lead.id)} == {'eq', 'tu'}
        assert fill.scan().leads[0]['missingBureaus'] == ['ex']

    def test_null_score_is_not_a_hit(self, repos, fill, matching_client, make_lead):
        lead = make_lead(scores={'eq': 600, 'tu': 610})
        matching_client.submit_handler = lambda program, records: {
            'success': True,
            'qualified': [{'input_id': 1, 'outputs': {'ex': {'credit_score': None}}}],
            'failed': [],
        }

        fill.execute()

        ex_row = [r for r in repos.results.list_for_lead(lead.id) if r.bureau == 'ex'][0]
        assert ex_row.is_hit is False
        assert ex_row.credit_score is None


class TestParseSelections:

    def test_normalizes_keys_and_bureaus(self):
        assert parse_selections({'5': ['EQ', 'tu']}) == {5: ['eq', 'tu']}

    @pytest.mark.parametrize('bad', [['eq'], {'x': ['eq']}, {'5': 'eq'}])
    def test_rejects_bad_shapes(self, bad):
        with pytest.raises(ValidationError):
            parse_selections(bad)
