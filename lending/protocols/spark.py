"""Spark lending protocol (an Aave V3 fork on Ethereum).

Spark shares Aave V3's pool interface and data provider, so only the
deployment addresses and asset restrictions differ. Its pool lends flash
loans without a premium, and Spark sequences always draw from it.
"""

from lending.protocols.aave_v3 import AaveV3Protocol

SPARK_POOL_ADDRESSES = {
    1: "0xC13e21B648A5Ee794902342038FF3aDAB66BE987",
}

SPARK_POOL_ADDRESSES_PROVIDER = {
    1: "0x02C3eA4e34C0cBd694D2adFa2c690EECbC1793eE",
}

SPARK_UI_POOL_DATA_PROVIDER = {
    1: "0xF028c2F4b19898718fD0F77b9b881CbfdAa5e8Bb",
}

# sDAI is collateral only
SPARK_BORROW_DISABLED = {
    1: {"0x83F20F44975D03b1b09e64809B757c47f942BEeA"},
}


class SparkProtocol(AaveV3Protocol):
    ID = "spark"
    PROTOCOL_TOKEN_PREFIX = "sp"
    POOL_ADDRESSES = SPARK_POOL_ADDRESSES
    POOL_ADDRESSES_PROVIDER = SPARK_POOL_ADDRESSES_PROVIDER
    UI_POOL_DATA_PROVIDER = SPARK_UI_POOL_DATA_PROVIDER
    SUPPLY_DISABLED = {}
    BORROW_DISABLED = SPARK_BORROW_DISABLED
    LEVERAGE_DISABLED = {}

    flash_loan_venue_id = "spark"
