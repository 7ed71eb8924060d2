from typing import List, Optional

from models import Platform, TransactionType

UBER_EARNING_CATEGORIES = [
    'Gross Transportation Fares', 'Split Fare Fee', 'Toll Reimbursement',
    'City/Government Fees', 'Airport Fees', 'Booking Fees',
    'Delivery Fee', 'Delivery Incentives', 'Delivery Tolls Reimbursement',
    'Miscellaneous/Referrals/Incentives', 'Tips', 'Miscellaneous',
]

DIDI_EARNING_CATEGORIES = [
    'Gross Rider Fares', 'Booking Fee', 'Handling Fee', 'Tolls',
    'Airport Fee', 'Government Levy', 'Cancellation Fee', 'CTP Fee',
    'Split Fare Fee', 'Other Fare Breakdown Amounts', 'Rewards', 'Other',
]

OTHER_EARNING_CATEGORIES = [
    'Gross Transportation Fares', 'Tips', 'Rewards', 'Miscellaneous/Referrals/Incentives', 'Other',
]

GENERAL_EXPENSE_CATEGORIES = [
    'Car Expenses - Fuel', 'Car Expenses - EV Home Charging', 'Car Expenses - EV Public Charging',
    'Car Expenses - Registration', 'Car Expenses - Insurance & CTP', 'Car Expenses - Servicing, Repairs & Tyres',
    'Car Expenses - Cleaning', 'Car Expenses - Accessories & Other', 'Car Expenses - Rent, Hire & Lease Payments',
    'Accountancy', 'Bank Fees', 'Computer Expenses', 'Courses & Training', 'Equipment (dashcams, tools etc)',
    'Internet', 'Mobile Phone - For Both Business & Personal', 'Mobile Phone - 100% for Business', 'Music Subscriptions',
    'Parking', 'Tolls (Expenses)', 'Other Expenses (GST)', 'Other Expenses (non-GST)',
]

# Deduction lines that appear on platform statements; only used to brief the extractor
UBER_EXPENSE_CATEGORIES = [
    'Uber Service Fees', 'Other Charges from Uber', 'Charges from 3rd Parties', 'Split Fare Fees',
    'Tolls (Expenses)', 'City/Government Fees', 'Airport Fees', 'Booking Fees',
]

DIDI_EXPENSE_CATEGORIES = [
    'DiDi Service Fee', 'Booking Fee', 'Handling Fee', 'Tolls (Expenses)', 'Airport Fees',
    'Government Levy', 'CTP Fee', 'Split Fare Fee', 'Other Deductions',
]


def categories_for(tx_type: TransactionType, platform: Platform) -> List[str]:
    """Categories a manual entry may use for the given type and platform."""
    if tx_type == TransactionType.EXPENSE:
        return list(GENERAL_EXPENSE_CATEGORIES)
    if platform == Platform.UBER:
        return list(UBER_EARNING_CATEGORIES)
    if platform == Platform.DIDI:
        return list(DIDI_EARNING_CATEGORIES)
    return list(OTHER_EARNING_CATEGORIES)


def is_valid_category(tx_type: TransactionType, platform: Platform, category: str) -> bool:
    return category in categories_for(tx_type, platform)


def reconcile_category(tx_type: TransactionType, platform: Platform, selected: Optional[str]) -> str:
    """Keep the selection if it is still valid, otherwise fall back to the first category."""
    options = categories_for(tx_type, platform)
    if selected in options:
        return selected
    return options[0]
