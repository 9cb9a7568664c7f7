import urllib.request
import os
import json
import argparse

# NOTE: Setup variables
add_question_set_example        = True
check_access_example            = True
payment_outcome_example         = True
redeem_code_example             = True
get_user_redeemed_codes_example = True
get_active_grants_example       = True
delete_redeem_code_example      = True

question_set_id: str = 'example-set'
price:           int = 499                    # Minor currency units, must match the set's price
user_id:         str = 'user-' + os.urandom(4).hex()

# NOTE: CLI handler
parser = argparse.ArgumentParser()
parser.add_argument( '-u', '--url', type=str, required=True, help='URL to the server to run the example on')
args = parser.parse_args()

def post(title: str, route: str, request_body: dict) -> dict:
    print('\n--\n')
    print(title)
    print('Request:\n' + json.dumps(request_body, indent=1))

    request = urllib.request.Request(f'{args.url}{route}', data=json.dumps(request_body).encode('utf-8'), headers={"Content-Type": "application/json"}, method="POST")
    with urllib.request.urlopen(request) as response:
        response_data = json.loads(response.read().decode('utf-8'))
        print(f"Response: {json.dumps(response_data, indent=1)}")
    return response_data

if add_question_set_example: # Paid set with the first 3 of 10 questions free to try
    _ = post('Add Question Set', '/add_question_set', {
        'id':                   question_set_id,
        'is_paid':              True,
        'price':                price,
        'trial_question_count': 3,
        'total_question_count': 10,
    })

if check_access_example: # Nothing bought yet, expect NoGrant and the gate at question index 3
    _ = post('Check Access (before purchase)', '/check_access', {'user_id': user_id, 'question_set_id': question_set_id})

if payment_outcome_example: # Report the same successful payment twice, the second is a replay
    transaction_id: str = os.urandom(16).hex()
    request_body        = {
        'transaction_id':  transaction_id,
        'amount':          price,
        'status':          1,                 # equivalent to => int(base.PaymentStatus.Succeeded.value)
        'user_id':         user_id,
        'question_set_id': question_set_id,
    }
    _ = post('Payment Outcome', '/payment_outcome', request_body)
    _ = post('Payment Outcome (replayed)', '/payment_outcome', request_body)
    _ = post('Check Access (after purchase)', '/check_access', {'user_id': user_id, 'question_set_id': question_set_id})

if redeem_code_example: # Generate a code as an admin and consume it as a second user
    response   = post('Generate Redeem Codes', '/generate_redeem_codes', {'question_set_id': question_set_id, 'validity_days': 7, 'quantity': 1, 'created_by': 'example-admin'})
    code:  str = response['result']['codes'][0]['code']
    other: str = 'user-' + os.urandom(4).hex()
    _          = post('Redeem Code', '/redeem_code', {'code': code, 'user_id': other})
    _          = post('Find Grants', '/find_grants', {'user_id': other, 'all': True})

    if get_user_redeemed_codes_example:
        _ = post('Get User Redeemed Codes', '/get_user_redeemed_codes', {'user_id': other})

if get_active_grants_example: # Every set the user holds a grant for, then an explicit batch check
    _ = post('Get Active Grants', '/get_active_grants', {'user_id': user_id})
    _ = post('Get Active Grants (batch)', '/get_active_grants', {'user_id': user_id, 'question_set_ids': [question_set_id, 'missing-set']})

if delete_redeem_code_example: # Only a code nobody redeemed yet can be deleted
    response    = post('Generate Redeem Codes', '/generate_redeem_codes', {'question_set_id': question_set_id, 'validity_days': 1, 'quantity': 1, 'created_by': 'example-admin'})
    unused: str = response['result']['codes'][0]['code']
    _           = post('Delete Redeem Code', '/delete_redeem_code', {'code': unused})
