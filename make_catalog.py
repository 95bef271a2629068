import os
import rmc
import pickle

def main(front_crossing_path="/data/fast1/rmc/front_crossings",
         output_path="/data/fast1/rmc/rm_obs",
         shelf_names=('ross',),
         nproc=8,
         overwrite=False,
         verbose=False):

    #shelf_names = ['brunt', 'fimbul', 'amery',
    #    'ap', 'ross', 'ronne', 'amundsen', 'east']

    written = []

    for shelf in shelf_names:

        print(" ")
        print('==================================')
        print(' LOADING THE FRONT CROSSINGS (%s)'%shelf)
        print('==================================')

        front_crossing_file_name = os.path.join(front_crossing_path, shelf + '_front_crossing_data.pkl')
        if not os.path.isfile(front_crossing_file_name):
            front_crossing_file_name = os.path.join(front_crossing_path, shelf + '_front_crossing_data.h5')

        rm_output_file_name = os.path.join(output_path, shelf + '_rm_data.h5')

        # Does the output file already exist?
        if os.path.isfile(rm_output_file_name) and not overwrite:
            print("R-M data already saved for %s, skipping."%shelf)
            print("Current filename is: %s"%rm_output_file_name)
            print("Pass overwrite=True to repeat the detection.")
            continue

        profiles = rmc.load_front_crossings(front_crossing_file_name, verbose=verbose)

        print('==================================')
        print(' FINDING THE RAMPART-MOATS (%s)'%shelf)
        print('==================================')
        rm_obs = rmc.detect_rm_features(profiles,
                                        moat_h_lower_limit=rmc.MOAT_H_LOWER_LIMIT,
                                        moat_search_dist=rmc.MOAT_SEARCH_DIST,
                                        rampart_max_search_dist=rmc.RAMPART_MAX_SEARCH_DIST,
                                        nproc=nproc, verbose=verbose)

        rmc.save_rm_data(rm_obs, rm_output_file_name)

        # Also keep a table with the R-M dimensions and locations in lat-lon
        rm_table = rmc.add_lat_lon(rmc.rm_dimensions(rm_obs))
        rm_table['moat_time'] = rmc.delta_time_to_datetime(rm_table['moat_delta_time'])
        rm_table_file_name = os.path.join(output_path, shelf + '_rm_obs.pkl')
        with open(rm_table_file_name, 'wb') as handle:
            pickle.dump(rm_table, handle, protocol=pickle.HIGHEST_PROTOCOL)

        print('Wrote file %s'%rm_output_file_name)
        written.append(rm_output_file_name)

    return written

if __name__ == "__main__":
    main()
