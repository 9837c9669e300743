import pytest
from salescall.prompts import Script
from salescall.session import CallSession, CustomerRecord
from salescall.state_machine import StateMachine


@pytest.fixture
def customer():
    return CustomerRecord(
        phone="+15125551234",
        key="CUST_1",
        name="Jonas",
        car_model="2021 Toyota Camry",
        dealership="Premier Auto",
        email="",
        row=2,
        found=True,
    )


@pytest.fixture
def session(customer):
    return CallSession(call_id="CA_test", customer=customer)


@pytest.fixture
def script():
    return Script()


@pytest.fixture
def machine(script):
    return StateMachine(script)
