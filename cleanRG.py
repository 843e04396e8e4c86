import argparse
import configparser
import os
import sys
from time import strftime

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential, DefaultAzureCredential, InteractiveBrowserCredential
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient
from openpyxl import Workbook, load_workbook

Logfile = False
log_name = strftime('cleanRG_' + "%Y-%b-%d_%H-%M-%S.log")
xlsx_name = None

LISTING_FIELDS = ('ResourceGroupName', 'Location', 'ProvisioningState', 'Tags', 'ResourceId')


def get_config_azure(config_file='config.txt'):
    """
    read the azure details (service principal and subscription) from config.txt
    :return: dict with the keys found in [azure_details], empty if the section is missing
    """
    _log('INFO: Checking azure config')
    config = configparser.ConfigParser(interpolation=None)
    config.read(config_file)
    if not config.has_section('azure_details'):
        _log('INFO: No azure_details section in config file')
        return {}
    return {key: value.strip() for key, value in config['azure_details'].items() if value.strip()}


def get_config_tags(config_file='config.txt'):
    """
    read the default tags to find from config.txt
    :return: dict of tag key -> wanted value, keys keep their case
    """
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # tag keys are case sensitive
    config.read(config_file)
    if not config.has_section('tags_to_find'):
        return {}
    tags = dict(config['tags_to_find'].items())
    _log(f"INFO: Tags to find from config file - {tags}")
    return tags


def parse_tags(tag_strings):
    """
    convert 'key=value' strings from the CLI to a dict, keeping the order given
    :param tag_strings: list of 'key=value' strings
    :return: dict of tag key -> wanted value
    """
    tags = {}
    for tag in tag_strings or []:
        if '=' not in tag:
            raise argparse.ArgumentTypeError(f"Invalid tag format '{tag}', expected key=value")
        key, value = tag.split('=', 1)
        if not key:
            raise argparse.ArgumentTypeError(f"Invalid tag format '{tag}', key must not be empty")
        tags[key] = value
    return tags


def get_credential(do_login, azure_details):
    """
    get a credential for the management clients
    :param do_login: authenticate explicitly instead of reusing the current session
    :param azure_details: dict from get_config_azure()
    """
    if not do_login:
        _log('INFO: Using current azure session')
        return DefaultAzureCredential()

    if all(azure_details.get(key) for key in ('tenant_id', 'client_id', 'client_secret')):
        _log(f"INFO: Login with service principal {azure_details['client_id']}")
        return ClientSecretCredential(tenant_id=azure_details['tenant_id'],
                                      client_id=azure_details['client_id'],
                                      client_secret=azure_details['client_secret'])

    _log('INFO: Login with interactive browser')
    return InteractiveBrowserCredential(tenant_id=azure_details.get('tenant_id'))


def set_subscription_context(credential, subscription_id):
    """
    check the subscription is visible to the logged in account before working on it
    :raise ValueError: subscription not found for this account
    """
    subscription_client = SubscriptionClient(credential)
    found = False
    for sub in subscription_client.subscriptions.list():
        _log(f"INFO: Found subscription: {sub.subscription_id} ({sub.display_name})")
        if sub.subscription_id == subscription_id:
            found = True

    if not found:
        raise ValueError(f"Subscription {subscription_id} not found for the logged in account")
    _log(f"INFO: Switched context to subscription {subscription_id}")


def get_single_subscription(credential):
    """
    find the subscription to work on when none was given, only if the account sees exactly one
    :raise ValueError: no subscription or more than one subscription visible
    """
    subscription_client = SubscriptionClient(credential)
    subscriptions = [sub.subscription_id for sub in subscription_client.subscriptions.list()]
    if len(subscriptions) != 1:
        raise ValueError(f"Found {len(subscriptions)} subscriptions for the current session, "
                         f"use --subscriptionId, config.txt or AZURE_SUBSCRIPTION_ID")
    _log(f"INFO: Using the only subscription found: {subscriptions[0]}")
    return subscriptions[0]


def list_resource_groups(resource_client):
    _log('INFO: Getting resource groups')
    resource_groups = list(resource_client.resource_groups.list())
    if not resource_groups:
        _log('WARNING: No resource groups found')
    return resource_groups


def _listing_row(rg):
    provisioning_state = rg.properties.provisioning_state if rg.properties else None
    return (rg.name, rg.location, provisioning_state, rg.tags or '', rg.id)


def print_resource_groups(resource_groups, table_format=False):
    """
    dump the resource groups before checking them, as list (default) or table
    """
    rows = [tuple(str(value) if value is not None else '' for value in _listing_row(rg))
            for rg in resource_groups]

    if table_format:
        widths = [max([len(field)] + [len(row[i]) for row in rows]) for i, field in enumerate(LISTING_FIELDS)]
        _log('  '.join(field.ljust(widths[i]) for i, field in enumerate(LISTING_FIELDS)).rstrip())
        _log('  '.join('-' * width for width in widths))
        for row in rows:
            _log('  '.join(value.ljust(widths[i]) for i, value in enumerate(row)).rstrip())
        return

    width = max(len(field) for field in LISTING_FIELDS)
    for row in rows:
        for field, value in zip(LISTING_FIELDS, row):
            _log(f"{field.ljust(width)} : {value}")
        _log('')


def should_delete(rg, tags_to_find=None, delete_untagged=False):
    """
    check if a resource group should be deleted
    untagged groups are deleted only with delete_untagged, tagged groups only when
    one of tags_to_find is found with the same value (key case sensitive, value not)
    :param rg: resource group from the resource management client
    :param tags_to_find: dict of tag key -> value that mark a group for deletion
    :param delete_untagged: delete groups with no tags at all
    :return: True if the group should be deleted
    """
    delete = False

    if delete_untagged and not rg.tags:
        _log(f"INFO: {rg.name} has no tags")
        delete = True

    elif rg.tags and tags_to_find:
        for key, wanted_value in tags_to_find.items():
            if key in rg.tags:
                _log(f"INFO: Found tag {key} with value: {rg.tags[key]}")
                if str(rg.tags[key]).lower() == str(wanted_value).lower():
                    _log(f"INFO: Tag {key} matches {wanted_value}")
                    delete = True
                    break
                _log(f"INFO: Tag {key} does not match {wanted_value}")

    return delete


def delete_resource_group(resource_client, rg):
    # forced delete, waits until azure finish removing the group and its resources
    poller = resource_client.resource_groups.begin_delete(rg.name)
    poller.result()


def clean_rg(resource_client, resource_groups, tags_to_find=None, delete_untagged=False, dry_run=True,
             delete_func=None):
    """
    go over the resource groups in the order listed and delete the ones that match
    errors from azure are not caught, the first failure stops the cleaning
    :param resource_client: ResourceManagementClient used for the delete calls
    :param resource_groups: list of resource groups to check
    :param tags_to_find: dict of tag key -> value that mark a group for deletion
    :param delete_untagged: delete groups with no tags at all
    :param dry_run: only log what would be deleted
    :param delete_func: called with (resource_client, rg) to delete, default delete_resource_group
    :return: list of the groups deleted (or that would be deleted in dry run)
    """
    _log("INFO: entering clean_rg()")
    delete_func = delete_func or delete_resource_group
    deleted = []

    for rg in resource_groups:
        _log(f"INFO: Checking resource group - {rg.name}")

        if not should_delete(rg, tags_to_find, delete_untagged):
            _log(f"INFO: Keeping: {rg.name}")
            print_results_xlsx(data=rg, OperationDone='Keep')
            continue

        if dry_run:
            _log(f"INFO: Simulation only, would delete: {rg.name} ({rg.id})")
            print_results_xlsx(data=rg, OperationDone='DryRun-Delete')
        else:
            _log(f"INFO: Deleting: {rg.name} ({rg.id})")
            delete_func(resource_client, rg)
            _log(f"INFO: Deleted: {rg.name}")
            print_results_xlsx(data=rg, OperationDone='Delete')
        deleted.append(rg)

    _log(f"INFO: existing clean_rg(), {len(deleted)} resource groups {'to delete' if dry_run else 'deleted'}")
    return deleted


def create_xlsx(file_name):
    global xlsx_name
    _log('INFO: Creating excel')
    wb = Workbook()

    ws_rg = wb.active
    ws_rg.title = 'ResourceGroups'
    ws_rg.append(("OperationDone", "Name", "Location", "ProvisioningState", "Tags", "ResourceId"))

    wb.save(file_name)
    xlsx_name = file_name


def print_results_xlsx(**kwargs):
    # no report requested
    if not xlsx_name:
        return

    wb = load_workbook(xlsx_name)
    ws = wb['ResourceGroups']
    name, location, provisioning_state, tags, resource_id = _listing_row(kwargs['data'])
    ws.append((kwargs['OperationDone'], name, location, provisioning_state, str(tags or 'N/A'), resource_id))
    wb.save(xlsx_name)


def _log(line):
    """
    used instead of print, log to console and to log file if --log was given
    :param line: line to be printed to log
    """
    if Logfile:
        with open(log_name, "a") as file:
            file.write(str(line) + '\n')
    print(line)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Delete resource groups by tags, as config in the config.txt file')
    parser.add_argument('--subscriptionId', '-s', type=str,
                        help='subscription id, required with --doAzureLogin (default from config.txt or '
                             'AZURE_SUBSCRIPTION_ID)')
    parser.add_argument('--tagsToFind', '-t', nargs='+', metavar='KEY=VALUE',
                        help='tags that mark a resource group for deletion, key is case sensitive, value is not')
    parser.add_argument('--deleteResourceGroupWithNoTags', action='store_true',
                        help='also delete resource groups with no tags')
    parser.add_argument('--doAzureLogin', action='store_true',
                        help='login and switch to the subscription before listing')
    parser.add_argument('--simulationOnly', action='store_true',
                        help="Run in simulation mode, won't delete anything")
    parser.add_argument('--useTableFormat', action='store_true',
                        help='print the resource groups as a table')
    parser.add_argument('--log', action='store_true',
                        help='Will create logs file for the CLI Operations')
    parser.add_argument('--report', action='store_true',
                        help='Will create excel report of the resource groups checked')

    args = parser.parse_args(argv)
    try:
        args.tagsToFind = parse_tags(args.tagsToFind)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    return args, parser


def main(argv=None):
    global Logfile

    args, parser = parse_args(argv)
    Logfile = args.log

    azure_details = get_config_azure()
    subscription_id = (args.subscriptionId or azure_details.get('subscription_id')
                       or os.environ.get('AZURE_SUBSCRIPTION_ID'))
    if args.doAzureLogin and not args.subscriptionId and not azure_details.get('subscription_id'):
        parser.error('--subscriptionId is required with --doAzureLogin')

    tags_to_find = args.tagsToFind or get_config_tags()
    _log(f"INFO: Tags to find - {tags_to_find or 'N/A'}, delete untagged - {args.deleteResourceGroupWithNoTags}, "
         f"simulation only - {args.simulationOnly}")

    if args.report:
        create_xlsx(strftime('cleanRG_' + "%Y-%b-%d_%H-%M-%S.xlsx"))

    try:
        credential = get_credential(args.doAzureLogin, azure_details)
        if not subscription_id:
            subscription_id = get_single_subscription(credential)
        if args.doAzureLogin:
            set_subscription_context(credential, subscription_id)

        resource_client = ResourceManagementClient(credential, subscription_id)
        resource_groups = list_resource_groups(resource_client)
        print_resource_groups(resource_groups, args.useTableFormat)
        clean_rg(resource_client, resource_groups, tags_to_find=tags_to_find,
                 delete_untagged=args.deleteResourceGroupWithNoTags, dry_run=args.simulationOnly)
    except (AzureError, ValueError) as e:
        _log(f"ERROR: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
